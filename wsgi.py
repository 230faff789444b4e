from action_monitor import create_app

app = create_app()

# gunicorn -w 2 wsgi:app
# Set IS_SCHEDULER_WORKER=1 on exactly one process to run scheduled dispatch
