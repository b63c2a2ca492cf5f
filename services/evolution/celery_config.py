"""
Celery Configuration - Shared app instance
"""
from celery import Celery

import config

celery_app = Celery("soul_evolution", broker=config.CELERY_BROKER_URL)
celery_app.conf.task_routes = {
    'tasks.*': {'queue': 'soul'},
}
