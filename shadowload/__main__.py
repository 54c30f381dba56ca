import sys

from shadowload.cli import main

sys.exit(main())
