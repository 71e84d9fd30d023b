import os
import tempfile

# Keep module-level paths away from the working tree during test collection
os.environ.setdefault("MCFLEET_DATA_DIR", tempfile.mkdtemp(prefix="mcfleet-tests-"))
os.environ.setdefault("ADMIN_EMAILS", "admin@example.com")
os.environ.setdefault("SECRET_KEY", "test-secret")
