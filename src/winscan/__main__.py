"""Entry point: python -m winscan"""

import sys

from winscan.main import main

sys.exit(main())
