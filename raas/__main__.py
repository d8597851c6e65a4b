import sys

from raas.cli import main

sys.exit(main())
