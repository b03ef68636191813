"""
Production Server Configuration

Run FastAPI with a Uvicorn worker under Gunicorn. A single worker owns the
engine's shards; more workers would split shard ownership across processes.
"""

import os

# Server socket
bind = os.getenv("BIND", "0.0.0.0:8000")
backlog = 2048

# Worker processes
workers = 1
worker_class = "uvicorn.workers.UvicornWorker"
worker_connections = 1000
timeout = 120
keepalive = 5
# Long enough for the engine's final drain and flush
graceful_timeout = int(os.getenv("GRACEFUL_TIMEOUT", 60))

# Process naming
proc_name = "engagement-rollups-api"

# Server mechanics
daemon = False
pidfile = "/tmp/gunicorn.pid"
user = None
group = None
tmp_upload_dir = None

# Logging
errorlog = "-"
loglevel = os.getenv("LOG_LEVEL", "info").lower()
accesslog = "-"
access_log_format = '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s "%(f)s" "%(a)s" %(D)s'
