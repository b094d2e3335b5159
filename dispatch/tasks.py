"""
Celery Tasks
Background tasks run outside the request cycle.
"""

from datetime import datetime
import logging
import time

from dispatch.celery_worker import celery_app
from dispatch.core.config import get_settings
from dispatch.services.route_sheets import RouteSheetManager

logger = logging.getLogger(__name__)


@celery_app.task(
    bind=True,
    max_retries=3,
    default_retry_delay=5,
    autoretry_for=(Exception,),
    retry_backoff=True
)
def export_route_sheet(self, assignment_data: dict) -> dict:
    """
    Append a new assignment's stops to the Excel route sheet.

    Args:
        assignment_data: Export payload of the assignment

    Returns:
        dict: Result of the export operation
    """
    task_id = self.request.id
    assignment_id = assignment_data.get('id', 'unknown')

    logger.info(f"📋 Task {task_id}: Exporting route sheet for assignment #{assignment_id}")
    start_time = time.time()

    result = RouteSheetManager().export_assignment(assignment_data)

    elapsed = round(time.time() - start_time, 3)
    result['task_id'] = task_id
    result['processing_time_seconds'] = elapsed

    if result['success']:
        logger.info(f"✅ Task {task_id}: Assignment #{assignment_id} exported in {elapsed}s")
    else:
        logger.warning(f"⚠️ Task {task_id}: Assignment #{assignment_id} failed - {result['message']}")

    return result


@celery_app.task
def health_check() -> dict:
    """
    Simple health check task to verify Celery is working.
    """
    return {
        'status': 'healthy',
        'worker': 'celery',
        'timestamp': datetime.now().isoformat()
    }


@celery_app.task
def clear_route_sheet() -> dict:
    """
    Delete the route sheet workbook (reset between service days).
    """
    RouteSheetManager().clear()
    return {
        'success': True,
        'message': 'Route sheet cleared',
        'timestamp': datetime.now().isoformat()
    }


def queue_route_sheet_export(assignment_data: dict) -> bool:
    """
    Queue the export task; a broker outage is logged, never raised.

    Returns:
        bool: True if the task was queued
    """
    if not get_settings().export_route_sheets:
        return False

    try:
        export_route_sheet.delay(assignment_data)
        return True
    except Exception as e:
        logger.warning(f"Could not queue route sheet export for assignment #{assignment_data.get('id')}: {e}")
        return False
