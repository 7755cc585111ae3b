"""
Root conftest.py for pytest.

Sets up the Python path so imports work correctly without an install.
"""
import sys
from pathlib import Path

current_dir = Path(__file__).parent

# Add the project root to sys.path so "from erasure.X import Y" works
if str(current_dir) not in sys.path:
    sys.path.insert(0, str(current_dir))
