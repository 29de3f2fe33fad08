# =============================================================================
# Database Package
# =============================================================================
# Sync SQLAlchemy engine and ORM models for the job store.
#
# Key exports:
#   - get_sync_session / make_session_scope: transactional session scopes
#   - init_db: create tables
#   - ChatJobRecord, QueueControl: ORM models for jobs and queue flags
# =============================================================================
