import logging

from celery.schedules import crontab

from leadflow.celery_config import celery_app
from leadflow.tasks import fire_scheduled_triggers_task, recover_scheduled_actions_task

logger = logging.getLogger(__name__)


@celery_app.on_after_configure.connect
def setup_periodic_tasks(sender, **kwargs):
    logger.info("Setting up periodic tasks...")

    # Re-queue delayed actions whose wake-up was lost, every minute
    sender.add_periodic_task(
        crontab(minute="*"),
        recover_scheduled_actions_task.s(),
        name="recover-scheduled-actions"
    )

    # Fire scheduled_trigger automations whose slot has come round, every minute
    sender.add_periodic_task(
        crontab(minute="*"),
        fire_scheduled_triggers_task.s(),
        name="fire-scheduled-triggers"
    )

    logger.info("Periodic tasks configured successfully")
