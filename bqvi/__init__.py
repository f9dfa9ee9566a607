# __init__.py
import bqvi.acquisition
import bqvi.decorators
import bqvi.entropy
import bqvi.evaluation_ledger
import bqvi.optimizers
import bqvi.parameter_transformer
import bqvi.stats
import bqvi.surrogate
import bqvi.timer
import bqvi.variational_posterior
import bqvi.inference
from bqvi.inference import BQVI
from bqvi.variational_posterior import VariationalPosterior
