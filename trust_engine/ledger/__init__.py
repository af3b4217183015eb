# Trust Score Ledger Module
from .premium import PremiumEvent, PremiumQualification
from .trust_score import TrustScoreLedger, parse_entity_type

__all__ = ["PremiumEvent", "PremiumQualification", "TrustScoreLedger", "parse_entity_type"]
