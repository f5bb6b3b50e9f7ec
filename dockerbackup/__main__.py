import sys

from dockerbackup.run_job import main

sys.exit(main())
