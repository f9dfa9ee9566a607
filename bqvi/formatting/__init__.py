# __init__.py
from .formatting import format_dict, full_repr, summarize
