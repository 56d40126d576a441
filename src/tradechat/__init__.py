"""Trade chat: tiered trading rooms, signal tracking and social notifications."""
