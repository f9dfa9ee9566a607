# __init__.py
from .entlb import entlb
from .entmc import entmc
