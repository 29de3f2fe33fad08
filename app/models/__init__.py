# =============================================================================
# Models Package — Pydantic V2 Schemas
# =============================================================================
#   - jobs.py: job payloads, results, statuses and snapshots
#   - tools.py: per-tool argument shapes and the router's ToolDecision
#   - requests.py / responses.py: the HTTP contract
#
# These are SEPARATE from the ORM models (app/db/models.py): a job row
# stores the payload as JSON and is converted to JobInfo on the way out.
# =============================================================================
