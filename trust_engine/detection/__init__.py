# Fraud Detection Module
from .coordinated import CoordinatedClaimsDetector
from .detector import BaseFraudDetector
from .fraud import FraudPatternDetector
from .linkage import AccountLinkage
from .patterns import PatternRecorder
from .shared_signal import AddressClusterDetector, DeviceReuseDetector, SharedSignalDetector

__all__ = [
    "AccountLinkage",
    "AddressClusterDetector",
    "BaseFraudDetector",
    "CoordinatedClaimsDetector",
    "DeviceReuseDetector",
    "FraudPatternDetector",
    "PatternRecorder",
    "SharedSignalDetector",
]
