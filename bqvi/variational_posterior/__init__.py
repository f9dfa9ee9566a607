# __init__.py
from .variational_posterior import VariationalPosterior
