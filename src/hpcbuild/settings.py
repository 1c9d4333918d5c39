from __future__ import annotations
import os

PREFIX = os.environ.get("HPCBUILD_PREFIX", "install")
SRC_DIR = os.environ.get("HPCBUILD_SRC_DIR") or None
LOG_DIR = os.environ.get("HPCBUILD_LOG_DIR") or None
