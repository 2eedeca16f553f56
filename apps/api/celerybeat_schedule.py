"""
Celery Beat Schedule Configuration

Defines periodic tasks that run on a schedule.
"""

from celery.schedules import crontab

# Schedule configuration
beat_schedule = {
    # Expire medical and other overrides whose expiry date has passed
    'expire-overrides': {
        'task': 'tasks.expire_overrides',
        'schedule': crontab(hour=0, minute=5),  # Daily, just after midnight UTC
    },
}
