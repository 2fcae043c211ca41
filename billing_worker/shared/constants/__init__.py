"""
Application constants for the billing worker
"""

from .app import *
from .billing import *
from .redis import *

__all__ = app.__all__ + billing.__all__ + redis.__all__
