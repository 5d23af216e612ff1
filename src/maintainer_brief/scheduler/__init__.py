"""Recurring analysis scheduling: recurrence policy and the periodic sweep."""
