"""Configuration, scheduling and queueing for the line monitor."""
