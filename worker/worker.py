# Worker entry point: celery -A worker worker -B -Q signing
from esign.db import init_db
from esign.tasks import cel

init_db()

app = cel
