import os

from celery import Celery
from celery.schedules import crontab
from kombu import Exchange, Queue

# Set the default Django settings module for the 'celery' program.
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'upscaler.settings')

app = Celery('upscaler')

# Everything under the CELERY_ prefix in settings.py configures the app.
app.config_from_object('django.conf:settings', namespace='CELERY')

# Picks up billing.tasks
app.autodiscover_tasks()

BILLING_TASKS = (
    'billing.tasks.run_expiration_check',
    'billing.tasks.run_full_reconciliation',
    'billing.tasks.run_webhook_recovery',
    'billing.tasks.cleanup_webhook_events',
)

app.conf.task_default_queue = 'default'
app.conf.task_queues = (
    Queue('default', Exchange('default'), routing_key='default'),
    Queue('billing', Exchange('billing'), routing_key='billing'),
)
app.conf.task_routes = {name: {'queue': 'billing'} for name in BILLING_TASKS}

app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,
    task_track_started=True,
    task_time_limit=30 * 60,
    task_soft_time_limit=25 * 60,
    worker_prefetch_multiplier=1,
    # A job message lost with its worker is redelivered; every job re-reads its batch.
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_send_task_events=True,
    task_send_sent_event=True,
)

app.conf.task_annotations = {
    'billing.tasks.run_full_reconciliation': {
        'rate_limit': '1/h',
        'time_limit': 3600,
        'soft_time_limit': 3300,
    },
    'billing.tasks.run_webhook_recovery': {
        'rate_limit': '10/h',
        'time_limit': 600,
        'soft_time_limit': 540,
    },
}

app.conf.beat_schedule = {
    'billing_expiration_check_hourly': {
        'task': 'billing.tasks.run_expiration_check',
        'schedule': crontab(minute=5),
        'kwargs': {'trigger': 'beat'},
    },
    'billing_full_reconciliation_nightly': {
        'task': 'billing.tasks.run_full_reconciliation',
        'schedule': crontab(hour=3, minute=5),
        'kwargs': {'trigger': 'beat'},
    },
    'billing_webhook_recovery_15min': {
        'task': 'billing.tasks.run_webhook_recovery',
        'schedule': crontab(minute='*/15'),
        'kwargs': {'trigger': 'beat'},
    },
    'billing_cleanup_webhook_events_weekly': {
        'task': 'billing.tasks.cleanup_webhook_events',
        'schedule': crontab(hour=4, minute=30, day_of_week=0),
    },
}
