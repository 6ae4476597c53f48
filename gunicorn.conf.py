# Gunicorn configuration for the Sophia API
import multiprocessing
import os

# Render plans size the worker pool; locally scale with the CPU count
render_plan = os.getenv('RENDER_PLAN')
if os.getenv('RENDER'):
    if render_plan == 'free':
        workers = 2
        worker_connections = 100
    elif render_plan == 'starter':
        workers = 2
        worker_connections = 200
    else:
        workers = 4
        worker_connections = 500
else:
    workers = min(multiprocessing.cpu_count() * 2 + 1, 8)

# Webhook handlers acknowledge quickly and wait on Twilio/Telegram/OpenAI I/O
worker_class = 'gevent'

max_requests = 1000
max_requests_jitter = 50

# Twilio gives up on a webhook after 15s
timeout = 30 if render_plan == 'free' else 45
keepalive = 2 if render_plan == 'free' else 5
graceful_timeout = 30

accesslog = '-'
errorlog = '-'
loglevel = os.getenv('LOG_LEVEL', 'info').lower()

proc_name = 'sophia'

bind = f"0.0.0.0:{os.getenv('PORT', '10000')}"

preload_app = True

backlog = 2048
