"""calsync: bidirectional Google Calendar synchronization for a local event store."""
