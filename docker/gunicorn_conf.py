# Gunicorn configuration for DiffZip
# Only one worker may own the scheduler: two backup runs writing the same
# destination would corrupt its backup information.

import os
import logging

logger = logging.getLogger('gunicorn.error')

wsgi_app = 'diffzip:create_app()'


def post_worker_init(worker):
    """
    Called after a worker is initialized.

    Designates the first worker (worker.age == 0) as the scheduler owner.
    Only this worker runs APScheduler, so backups and the launch-time
    backup are queued exactly once.

    Args:
        worker: Gunicorn worker instance (uses 'age' attribute: 0, 1, 2, ...)
    """
    if worker.age == 0:
        os.environ['SCHEDULER_WORKER'] = 'true'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): Designated as SCHEDULER OWNER")
    else:
        os.environ['SCHEDULER_WORKER'] = 'false'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): Standard HTTP worker (scheduler disabled)")
