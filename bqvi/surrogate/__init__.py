# __init__.py
from .gpyreg_surrogate import GPyRegSurrogate
from .surrogate_model import MeanFunctionKind, SurrogateModel
