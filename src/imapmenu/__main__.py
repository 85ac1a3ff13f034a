# =============================================================================
# IMAPMenu Entry Point for `python -m imapmenu`
# =============================================================================
# This module allows IMAPMenu to be run as a Python module:
#
#   python -m imapmenu folders work
#
# This is equivalent to running the 'imapmenu' command after installation.
# =============================================================================

import sys

from imapmenu.app import main

if __name__ == "__main__":
    sys.exit(main())
