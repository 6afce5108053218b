"""Allow running as: python -m ironheart"""
import sys

from ironheart.cli import main

sys.exit(main())
