# =============================================================================
# Workers Package — Celery Background Tasks
# =============================================================================
#   - celery_app.py: Celery application configuration
#   - tasks.py: document ingestion, source fetching and ranking
#
# Parsing a large PDF, embedding it, or downloading a session's worth of
# web pages would block the API; the API queues them and returns a task_id.
# =============================================================================
