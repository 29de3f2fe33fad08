# =============================================================================
# Services Package — Queue, Sessions and External Collaborators
# =============================================================================
#   - queue.py: durable job queue over SQLAlchemy (claims, backoff, stalls)
#   - gateway.py: submission / polling façade, bounded sync wait
#   - sessions.py: conversation turn logs (memory or Redis) + expiry sweeper
#   - llm.py: completion backends (HTTP proxy, Anthropic, OpenAI-compatible)
#   - retrieval.py: pitch search (HTTP retrieval service or ChromaDB)
#   - embedder.py: query embeddings for the ChromaDB backend
# =============================================================================
