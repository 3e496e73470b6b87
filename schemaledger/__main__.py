"""Allow ``python -m schemaledger``."""
import sys

from schemaledger.cli import main

sys.exit(main())
