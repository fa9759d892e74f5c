# zonesync
# Incremental zone-based sync client: local SQLite store, pending-change queue,
# per-zone change tokens and pluggable conflict resolution.
__version__ = "0.1.0"
