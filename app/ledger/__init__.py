"""Credit ledger: balances, top-ups and resource purchases."""

from app.ledger.access import AccessResolver
from app.ledger.catalog import Catalog
from app.ledger.credit_transactions import CreditTransactionManager
from app.ledger.purchases import ResourcePurchaseManager

__all__ = ["AccessResolver", "Catalog", "CreditTransactionManager", "ResourcePurchaseManager"]
