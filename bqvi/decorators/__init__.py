# __init__.py
from .handle_0D_1D_input import handle_0D_1D_input
