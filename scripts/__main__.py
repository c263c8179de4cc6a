"""Allow `python -m scripts` by running the market report script."""

import sys

from scripts.market_report import main

sys.exit(main())
