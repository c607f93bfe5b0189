"""Initialize data directory structure."""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), "..", "backend"))

from shared.config import DATA_SUBDIRS, data_dir, ensure_data_dirs


def init():
    ensure_data_dirs()
    print(f"Data directories initialized at {data_dir()}: {', '.join(DATA_SUBDIRS)}")


if __name__ == "__main__":
    init()
