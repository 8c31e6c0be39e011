import sys

from e2e_harness.main import main

sys.exit(main())
