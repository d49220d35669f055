# Extraction worker: queue operations (queue.py), tunables (config.py) and the
# polling process (main.py).

# Re-export entry-points so ``from app.worker import process_job`` works.
# ``main`` is not re-exported; it would shadow the app.worker.main module.
from app.worker.main import worker_loop, process_job  # noqa: F401
