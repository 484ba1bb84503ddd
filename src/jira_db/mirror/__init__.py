"""Sync, history, snapshots, field evolution and read-only SQL over the local mirror."""
