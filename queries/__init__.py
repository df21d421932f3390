# Query modules package
"""
SQL templates and funnel queries for the Umami Analytics Workbench.
"""

from . import sql_template
from . import funnel_steps
from . import funnel_count
from . import funnel_timing
from . import funnel_results

__all__ = [
    'sql_template',
    'funnel_steps',
    'funnel_count',
    'funnel_timing',
    'funnel_results',
]
