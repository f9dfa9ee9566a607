# __init__.py
from .get_hpd import get_hpd
from .kl_div_mvn import kl_div_mvn
