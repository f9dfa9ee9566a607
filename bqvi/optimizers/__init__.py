# __init__.py
from .cmaes_optimizer import CMAESOptimizer
from .minimize_adam import AdamOptimizer, minimize_adam
from .optimizer import OptimizationError, Optimizer
from .scipy_optimizer import ScipyOptimizer
