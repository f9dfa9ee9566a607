# __init__.py
from .evaluation_ledger import EvaluationLedger
