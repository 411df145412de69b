from .store import LedgerStore, Pagination  # noqa: F401
