import sys

from wheel_matrix.runner import main

sys.exit(main())
