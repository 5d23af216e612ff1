"""Analysis pipeline: collaborator contracts and the staged executor."""
