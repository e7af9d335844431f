"""Market graph resolution: events -> verified condition/question/asset chains."""

from predindex.resolver.graph import MarketGraphResolver, QuestionResolution, ResolverConfig, decode_description
from predindex.resolver.labeler import OutcomeLabeler, labeler_from_name, negrisk_outcome_labeler

__all__ = [
    "MarketGraphResolver",
    "QuestionResolution",
    "ResolverConfig",
    "decode_description",
    "OutcomeLabeler",
    "labeler_from_name",
    "negrisk_outcome_labeler",
]
