"""
pytest configuration shared by all test packages.

Adds src directory to Python path for imports and points file logging at a
throwaway directory.
"""

import os
import sys
from pathlib import Path

os.environ.setdefault("LOG_DIR", "/tmp/statement_pipeline_test_logs")

# Add src directory to Python path
src_dir = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_dir))
