"""Background services: certificate reconciliation and fleet sync."""
