"""SQLAlchemy persistence for harness state."""
