import sys

from otel_logger.main import main

sys.exit(main())
