"""
Employee survey engine.

Population filtering and stratified sampling for survey rosters, and
anonymity-gated aggregation of anonymous answers, including comparison of
repeated surveys ("waves") over time.
"""

__version__ = "0.1.0"
