"""Celery wiring: tasks run inside the Flask application context."""

import logging

from celery import Celery, Task

logger = logging.getLogger(__name__)


def celery_init_app(app) -> Celery:
    class FlaskTask(Task):
        def __call__(self, *args, **kwargs):
            with app.app_context():
                return self.run(*args, **kwargs)

    celery_app = Celery(
        app.name,
        task_cls=FlaskTask,
        include=["tasks.meetings", "tasks.sweeps"],
    )
    celery_app.config_from_object(app.config["CELERY"])
    celery_app.set_default()
    app.extensions["celery"] = celery_app
    return celery_app


def safe_delay(task, *args, **kwargs):
    """Queue a task without letting broker trouble reach the caller.

    Returns the AsyncResult, or None when the task could not be queued.
    """
    try:
        result = task.delay(*args, **kwargs)
        logger.debug("Queued task %s (%s)", task.name, result.id)
        return result
    except Exception as exc:
        logger.warning("Failed to queue task %s: %s", task.name, exc)
        return None
