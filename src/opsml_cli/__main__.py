"""Allow ``python -m opsml_cli``."""

import sys

from opsml_cli.cli import main

sys.exit(main())
