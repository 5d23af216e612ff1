"""GitHub REST API collaborator."""
