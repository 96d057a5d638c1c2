# Keep this TINY so importing the package never drags in heavy deps.
from . import lib  # so: from modules.opportunity_harvest import lib
from .main import run  # so: from modules.opportunity_harvest import run

__all__ = ["lib", "run"]
