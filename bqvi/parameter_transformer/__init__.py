# __init__.py
from .parameter_transformer import ParameterTransformer
