# =============================================================================
# API Package — FastAPI Route Handlers
# =============================================================================
#   - queue.py: /agent/queue job endpoints (submit, poll, cancel, retry, admin)
#   - chat.py: /agent/chat, request/response façade over a queued job
#   - deps.py: dependency providers and domain error → HTTP mapping
# =============================================================================
