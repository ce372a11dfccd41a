#!/usr/bin/env python3
import sys
import os

# Append current directory to sys.path (for gigmarket imports)
sys.path.append(os.getcwd())

from alembic.config import main

if __name__ == '__main__':
    sys.exit(main())
