import sys

from wgpu_bench.cli import main

sys.exit(main())
