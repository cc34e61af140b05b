"""
StackBill installer - single-server provisioning for the StackBill cloud portal
"""

__version__ = "1.0.0"

from .core import StackBillInstaller
from .errors import InstallerError

__all__ = ["StackBillInstaller", "InstallerError"]
