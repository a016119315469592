"""CLI shim -- delegates to iaupload.cli.main().

Usage:
    python ia_upload.py jobs
    python ia_upload.py prune
"""

import sys

from iaupload.cli import main

if __name__ == "__main__":
    sys.exit(main())
