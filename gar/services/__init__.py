"""Domain services: scoring, lifecycle, recipients, notifications, weather."""
