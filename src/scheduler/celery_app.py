"""
Celery application configuration.
"""
from celery import Celery
from celery.schedules import crontab
from config.settings import get_settings

settings = get_settings()

# Create Celery app
app = Celery(
    'options_decision_engine',
    broker=f'redis://{settings.REDIS_HOST}:{settings.REDIS_PORT}/0',
    backend=f'redis://{settings.REDIS_HOST}:{settings.REDIS_PORT}/0',
    include=['src.scheduler.tasks']
)

# Celery configuration
app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,
    task_track_started=True,
    task_time_limit=10 * 60,  # 10 minutes max per task
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,
)

# Schedule configuration
app.conf.beat_schedule = {
    # Open position monitor, every 5 minutes during US market hours (Mon-Fri)
    'monitor-positions-5min': {
        'task': 'src.scheduler.tasks.monitor_open_positions',
        'schedule': crontab(minute='*/5', hour='13-21', day_of_week='mon-fri'),
    },
    'rule-tuning-report-daily': {
        'task': 'src.scheduler.tasks.rule_tuning_report',
        'schedule': crontab(hour=22, minute=0),  # 10 PM UTC daily
    },
}

if __name__ == '__main__':
    app.start()
