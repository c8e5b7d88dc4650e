"""
Data models for spatial transcriptomics analysis.
"""

from .analysis import *
from .data import *
