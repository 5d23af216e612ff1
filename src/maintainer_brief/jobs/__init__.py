"""Analysis job lifecycle: domain models, job store, idempotency gate, and services."""
