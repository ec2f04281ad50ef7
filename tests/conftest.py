import os
from pathlib import Path
import tempfile

# Settings and the engine are built at import time; point them at an
# isolated SQLite file before any test module imports the package.
DB_PATH = Path(tempfile.gettempdir()) / "rule_engine_test_api.db"
if DB_PATH.exists():
    DB_PATH.unlink()

os.environ.setdefault("DATABASE_URL", f"sqlite+pysqlite:///{DB_PATH}")
os.environ.setdefault("AUTO_CREATE_DB", "true")
os.environ.setdefault("AUTO_RUN_MIGRATIONS", "false")
os.environ.setdefault("ENABLE_MQTT_CONSUMER", "false")
os.environ.setdefault("RULES_ENV", "dev")
os.environ.setdefault("RULES_AUTH_DISABLED", "true")
