"""Domain value objects."""
from .money import FeeSplit, Money, round_half_up

__all__ = ["FeeSplit", "Money", "round_half_up"]
