# =============================================================================
# Shark Tank Conversational Agent
# =============================================================================
# A one-tool retrieval agent for questions about Shark Tank pitches, run
# behind a durable, retryable job queue.
#
# Package structure:
#   app/
#   ├── api/          → FastAPI route handlers (queue endpoints, sync chat)
#   ├── agents/       → Tool router, tools + registry, LangGraph agent
#   ├── db/           → Job store engine, session scope, ORM models
#   ├── models/       → Pydantic V2 job, tool and API schemas
#   ├── services/     → Job queue, gateway, sessions, completion and
#   │                    retrieval clients
#   └── workers/      → Celery app, tasks and the chat job processor
# =============================================================================
