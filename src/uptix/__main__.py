import sys

from uptix.cli import main

sys.exit(main())
