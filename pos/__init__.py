"""Staff point of sale."""

from .sales import POSItem, POSSale, process_pos_sale

__all__ = ["POSItem", "POSSale", "process_pos_sale"]
