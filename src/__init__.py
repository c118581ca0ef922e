"""Mental Model Engine: proficiency tracking and blind spot detection."""
