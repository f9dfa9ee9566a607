# __init__.py
from .active_sampler import ActiveSampler
from .best_iterate import determine_best_iterate
from .bqvi import BQVI
from .iteration_history import EventTag, IterationHistory, IterationRecord
from .optimization_state import EntropyKind, OptimizationState
from .options import Options
from .surrogate_fit import train_surrogate
from .termination import TerminationEvaluator
from .variational_fit import final_boost, optimize_vp, update_K
from .warmup import WarmupController
