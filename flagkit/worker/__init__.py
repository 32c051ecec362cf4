"""
Celery worker running the rollout schedule driver.

    celery -A flagkit.worker.celery_app worker -B
"""
