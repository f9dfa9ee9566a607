# __init__.py
from .acquisition_function import (
    AcquisitionFunction,
    AcquisitionKind,
    make_acquisition_function,
)
from .hedge import AcquisitionHedge
from .prospective import (
    LogProspectiveAcquisition,
    ProspectiveAcquisition,
    VanillaAcquisition,
)

__all__ = [
    "AcquisitionFunction",
    "AcquisitionHedge",
    "AcquisitionKind",
    "LogProspectiveAcquisition",
    "ProspectiveAcquisition",
    "VanillaAcquisition",
    "make_acquisition_function",
]
