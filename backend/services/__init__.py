from importlib import import_module

__all__ = [
    "CostBasisService",
    "build_cost_basis_service",
    "compute_cost_basis",
    "PriceResolver",
    "RecalculationQueue",
    "DatabaseCacheService",
    "LedgerRepository",
]

_LAZY_EXPORTS = {
    "CostBasisService": ("services.cost_basis_service", "CostBasisService"),
    "build_cost_basis_service": ("services.cost_basis_service", "build_cost_basis_service"),
    "compute_cost_basis": ("services.cost_basis_calculator", "compute_cost_basis"),
    "PriceResolver": ("services.price_resolver", "PriceResolver"),
    "RecalculationQueue": ("services.recalc_queue", "RecalculationQueue"),
    "DatabaseCacheService": ("services.cache_service", "DatabaseCacheService"),
    "LedgerRepository": ("services.ledger_repository", "LedgerRepository"),
}


def __getattr__(name):
    if name not in _LAZY_EXPORTS:
        raise AttributeError(f"module 'services' has no attribute {name!r}")

    module_name, attr_name = _LAZY_EXPORTS[name]
    module = import_module(module_name)
    value = getattr(module, attr_name)
    globals()[name] = value
    return value
