from celery import Celery
from celery.signals import (
    task_failure, task_retry, task_prerun, task_postrun,
    worker_ready, worker_shutdown, worker_init
)
import logging
from datetime import timedelta

from core.config import settings

logger = logging.getLogger(__name__)

REDIS_URL = settings.REDIS_URL
MAX_CONCURRENT_TASKS = settings.MAX_CONCURRENT_TASKS
WORKER_MAX_TASKS_PER_CHILD = settings.WORKER_MAX_TASKS_PER_CHILD
ENABLE_GRACEFUL_SHUTDOWN = settings.ENABLE_GRACEFUL_SHUTDOWN


# ============================================
# CREATE CELERY APP
# ============================================

celery_app = Celery(
    "ab_experiment_worker",
    broker=REDIS_URL,
    backend=REDIS_URL,
    include=[
        "tasks.ab_testing",
    ]
)

logger.info("✅ Celery app created")


# ============================================
# CELERY CONFIGURATION
# ============================================

celery_app.conf.update(
    # ===== BASIC CONFIGURATION =====
    timezone='UTC',
    enable_utc=True,

    # ===== TASK CONFIGURATION =====
    task_acks_late=False,
    task_reject_on_worker_lost=True,
    task_ignore_result=True,  # Don't store task results by default
    task_store_errors_even_if_ignored=True,  # But store errors for debugging
    task_track_started=True,
    task_time_limit=settings.CELERY_TASK_TIME_LIMIT,
    task_soft_time_limit=settings.CELERY_TASK_SOFT_TIME_LIMIT,

    # ===== WORKER CONFIGURATION =====
    worker_prefetch_multiplier=max(1, MAX_CONCURRENT_TASKS // 10),
    worker_max_tasks_per_child=WORKER_MAX_TASKS_PER_CHILD,
    worker_log_format='[%(asctime)s: %(levelname)s/%(processName)s] %(message)s',
    worker_task_log_format='[%(asctime)s: %(levelname)s/%(processName)s][%(task_name)s(%(task_id)s)] %(message)s',
    worker_redirect_stdouts=True,
    worker_redirect_stdouts_level='INFO',

    # ===== BROKER CONFIGURATION =====
    broker_connection_retry_on_startup=True,
    broker_connection_retry=True,
    broker_connection_max_retries=10,
    broker_heartbeat=30,
    broker_transport_options={
        'visibility_timeout': 3600,
        'socket_keepalive': True,
        'socket_connect_timeout': 5,
    },

    # ===== RESULT BACKEND CONFIGURATION =====
    result_backend=REDIS_URL,
    result_expires=3600,

    # ===== SERIALIZATION =====
    task_serializer='json',
    result_serializer='json',
    accept_content=['json'],

    # ===== QUEUE CONFIGURATION =====
    task_default_queue='ab_tests',
    task_default_exchange='ab_tests',
    task_default_routing_key='ab_tests',
    task_queue_max_priority=10,
    task_default_priority=5,

    # ===== MONITORING CONFIGURATION =====
    worker_send_task_events=True,
    task_send_sent_event=True,

    # ===== ROUTING CONFIGURATION =====
    task_routes={
        'tasks.assign_ab_test_recipients': {'queue': 'ab_tests', 'priority': 8},
        'tasks.ingest_ab_test_event': {'queue': 'ab_tests', 'priority': 7},
        'tasks.recompute_ab_test_significance': {'queue': 'ab_tests', 'priority': 6},
        'tasks.check_ab_test_durations': {'queue': 'ab_tests', 'priority': 4},
        'tasks.rebuild_ab_test_metrics': {'queue': 'ab_tests', 'priority': 2},
    },

    # ===== TASK ANNOTATIONS =====
    task_annotations={
        '*': {
            'rate_limit': '1000/s',
        },
    },
)

logger.info("✅ Celery configuration applied")


# ============================================
# BEAT SCHEDULE (PERIODIC TASKS)
# ============================================

beat_schedule = {}

if settings.ENABLE_AB_TESTING:
    beat_schedule.update({
        # ===== DURATION POLICY =====
        'check-ab-test-durations': {
            'task': 'tasks.check_ab_test_durations',
            'schedule': timedelta(minutes=settings.AB_TEST_DURATION_CHECK_MINUTES),
            'options': {'queue': 'ab_tests', 'priority': 4}
        },
    })

celery_app.conf.beat_schedule = beat_schedule
logger.info(f"✅ Beat schedule configured with {len(beat_schedule)} periodic tasks")


# ============================================
# SIGNAL HANDLERS
# ============================================

@task_prerun.connect
def task_prerun_handler(sender=None, task_id=None, task=None, args=None, kwargs=None, **extra):
    """Handle task startup"""
    try:
        logger.debug(f"Task starting: {task.name if task else 'unknown'} [{task_id}]")
    except Exception as e:
        logger.error(f"Task prerun handler error: {e}")


@task_postrun.connect
def task_postrun_handler(sender=None, task_id=None, task=None, args=None, kwargs=None,
                         retval=None, state=None, **extra):
    """Handle task completion"""
    try:
        logger.debug(f"Task completed: {task.name if task else 'unknown'} [{task_id}] - State: {state}")
    except Exception as e:
        logger.error(f"Task postrun handler error: {e}")


@task_failure.connect
def task_failure_handler(sender=None, task_id=None, exception=None, traceback=None,
                         einfo=None, args=None, kwargs=None, **extra):
    """Handle task failures"""
    try:
        task_name = sender.name if sender else 'unknown'
        error_msg = str(exception) if exception else 'unknown'
        logger.error(f"❌ Task failure: {task_name} [{task_id}] - {error_msg} (args={args})")
    except Exception as e:
        logger.error(f"Task failure handler error: {e}")


@task_retry.connect
def task_retry_handler(sender=None, task_id=None, reason=None, einfo=None, **kwargs):
    """Handle task retries"""
    try:
        task_name = sender.name if sender else 'unknown'
        logger.warning(f"⚠️  Task retry: {task_name} [{task_id}] - Reason: {reason}")
    except Exception as e:
        logger.error(f"Task retry handler error: {e}")


@worker_init.connect
def worker_init_handler(sender=None, **kwargs):
    """Handle worker initialization"""
    try:
        logger.info(f"🔧 Worker initializing: {sender.hostname if sender else 'unknown'}")
    except Exception as e:
        logger.error(f"Worker init handler error: {e}")


@worker_ready.connect
def worker_ready_handler(sender=None, **kwargs):
    """Worker ready event handler"""
    try:
        hostname = sender.hostname if sender else 'unknown'
        logger.info(f"✅ Celery worker ready: {hostname}")
    except Exception as e:
        logger.error(f"Worker ready handler error: {e}")


if ENABLE_GRACEFUL_SHUTDOWN:
    @worker_shutdown.connect
    def worker_shutdown_handler(sender=None, **kwargs):
        """Worker shutdown event handler"""
        try:
            logger.info(f"🛑 Celery worker shutting down: {sender.hostname if sender else 'unknown'}")
        except Exception as e:
            logger.error(f"Worker shutdown handler error: {e}")


__all__ = ['celery_app']
