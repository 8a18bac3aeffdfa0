"""
Root pytest configuration for Astral Core Trust.

Sets up the Python path and test environment variables before settings load.
"""

import os
import sys
from pathlib import Path

# Set test environment variables before anything else imports settings
os.environ.setdefault("TRUST_ENVIRONMENT", "testing")
os.environ.setdefault("TRUST_LOG_LEVEL", "DEBUG")
os.environ.setdefault("SESSION_TOKEN_SECRET", "test_session_secret_for_pytest_only_minimum_32_chars")
os.environ.setdefault("CRISIS_FINGERPRINT_KEY", "test_fingerprint_key_for_pytest_only")
os.environ.setdefault("AUDIT_SIGNING_KEY", "test_audit_signing_key_for_pytest_only")

project_root = Path(__file__).parent

# Add src directory to path for imports
src_path = project_root / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))
