"""Gunicorn configuration for the simulator API."""
import sys

# Gunicorn config variables
bind = "0.0.0.0:8080"
# Node state, sensor sessions and the load loop live in process memory.
workers = 1
threads = 4
timeout = 120
worker_class = "gthread"
preload_app = False

def post_worker_init(worker):
    """Called just after a worker has initialized the application."""
    app = getattr(worker, "wsgi", None)
    manager = app.config.get('sim_manager') if app and hasattr(app, 'config') else None
    if manager is None:
        print(f"[Worker {worker.pid}] WARNING: No simulation manager found in app.config", file=sys.stderr, flush=True)
        return
    print(f"[Worker {worker.pid}] Simulator serving {len(manager.nodes())} nodes", file=sys.stderr, flush=True)

def worker_exit(server, worker):
    """Stop timers and sensor sessions when the worker goes away."""
    app = getattr(worker, "wsgi", None)
    manager = app.config.get('sim_manager') if app and hasattr(app, 'config') else None
    if manager is not None:
        manager.shutdown()
