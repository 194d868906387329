import os
import tempfile

# settings are read once at import time, so the environment must be ready first
_db_dir = tempfile.mkdtemp(prefix="war-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_db_dir, 'test.db')}"
os.environ["SECRET_KEY"] = "test-secret-" + "x" * 64
os.environ.setdefault("ORIGIN", "http://localhost:5173")
os.environ.pop("SHUFFLE_SEED", None)
os.environ.pop("MAX_ROUNDS", None)
