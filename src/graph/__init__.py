"""
Per-user knowledge graph.

Components:
- knowledge_graph.KnowledgeGraphStore: owns concept nodes and dependency edges
- maintenance.GraphMaintenance: periodic decay/pruning sweeps with an audit trail
- models: KnowledgeNode, UserEvent and the read-only projections
- errors: GraphError hierarchy
"""
