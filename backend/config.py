import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables in priority order:
# 1. backend/.env (lowest priority)
# 2. repo_root/.env (overrides backend)
# 3. repo_root/.env.local (highest priority - overrides everything)
repo_root = Path(__file__).parent.parent
env_local = repo_root / ".env.local"
env_file = repo_root / ".env"
backend_env = Path(__file__).parent / ".env"

if backend_env.exists():
    load_dotenv(dotenv_path=backend_env, override=False)
if env_file.exists():
    load_dotenv(dotenv_path=env_file, override=True)
if env_local.exists():
    load_dotenv(dotenv_path=env_local, override=True)

# Process-wide settings only. Everything the probes, reporter and backup
# pipeline need is read once into HealthMonitorConfig (health_monitor/config.py)
# and handed to constructors.
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Directory for JSONL run records (services_logging.py)
HEALTH_MONITOR_LOG_DIR = os.getenv("HEALTH_MONITOR_LOG_DIR") or str(Path(__file__).parent / "logs")

# Package version reported in report metadata
PACKAGE_VERSION = "1.0.0"
