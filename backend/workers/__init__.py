# Workers: separate processes that use the DB as shared state.
# Run from backend/ with:
#   python -m workers.cost_basis_worker [WALLET_ADDRESS ...]
