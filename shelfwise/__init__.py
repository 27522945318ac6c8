"""ShelfWise lending library: transactional borrowing engine."""

__version__ = "0.1.0"
