"""
Product catalog.
A fixed, read-only collection of product definitions loaded at process start.
"""

import re
from typing import Dict, Iterable, Iterator, Optional, Tuple

from fairlens.exceptions import DuplicateProductError
from fairlens.models import CustomerKind, CustomerProfile, Product, TargetCustomerKind
from fairlens.scoring import format_limit


DEMO_PRODUCTS = [
    {
        "id": "prod_cc_001",
        "name": "Everyday Cashback Platinum",
        "category": "CREDIT_CARD",
        "description": "High-value cashback card for salaried individuals with stable income.",
        "targetCustomerType": "INDIVIDUAL",
        "constraints": {
            "minAge": 21,
            "minMonthlyIncome": 3000,
            "maxDebtToIncome": 0.5,
            "maxLatePaymentIncidentsLast12Months": 1,
        },
        "scoring": {
            "weights": {"incomeStability": 0.3, "debtToIncome": 0.4, "creditUtilization": 0.3},
            "thresholds": {"approve": 0.75, "review": 0.5},
        },
        "explanationTemplates": {
            "approved": "You are well-qualified for the {{productName}} due to your low debt ratio.",
            "review": "Your application requires manual review due to moderate credit utilization.",
            "declined": "We cannot offer this card at this time due to high debt-to-income ratio.",
        },
    },
    {
        "id": "prod_pl_001",
        "name": "Flexi-Personal Loan",
        "category": "PERSONAL_LOAN",
        "description": "Unsecured personal loan up to $50k for debt consolidation or large purchases.",
        "targetCustomerType": "INDIVIDUAL",
        "constraints": {
            "minAge": 23,
            "minMonthlyIncome": 4000,
            "maxDebtToIncome": 0.6,
            "maxBouncedChequesLast12Months": 0,
        },
        "scoring": {
            "weights": {"debtToIncome": 0.5, "incomeStability": 0.3, "latePayments": 0.2},
            "thresholds": {"approve": 0.8, "review": 0.6},
        },
        "explanationTemplates": {
            "approved": "Your strong income stability makes you a great candidate for {{productName}}.",
            "review": "We can consider your application, but may need additional guarantors.",
            "declined": "Income stability or debt levels do not meet the strict criteria for this loan.",
        },
    },
    {
        "id": "prod_sme_001",
        "name": "SME Working Capital Line",
        "category": "SME_LOAN",
        "description": "Revolving credit line for businesses to manage cash flow gaps.",
        "targetCustomerType": "SME",
        "constraints": {
            "minBusinessAgeMonths": 24,
            "minAverageMonthlyRevenue": 10000,
            "minDSCR": 1.25,
            "maxBouncedChequesLast12Months": 2,
        },
        "scoring": {
            "weights": {"revenueStability": 0.3, "dscr": 0.4, "bouncedCheques": 0.3},
            "thresholds": {"approve": 0.7, "review": 0.5},
        },
        "explanationTemplates": {
            "approved": "Your business health and DSCR of {{dscr}} qualify you for our prime rate.",
            "review": "Your cash flow is generally good, but recent bounced cheques trigger a manual review.",
            "declined": "The business does not meet the minimum revenue or stability requirements.",
        },
    },
    {
        "id": "prod_sme_002",
        "name": "Startup Builder Card",
        "category": "CREDIT_CARD",
        "description": "Credit card for early-stage businesses with high growth potential.",
        "targetCustomerType": "SME",
        "constraints": {
            "minBusinessAgeMonths": 6,
            "minAverageMonthlyRevenue": 2000,
        },
        "scoring": {
            "weights": {"revenueStability": 0.5, "creditUtilization": 0.5},
            "thresholds": {"approve": 0.6, "review": 0.4},
        },
        "explanationTemplates": {
            "approved": "Great fit for a young business showing consistent monthly revenue.",
            "review": "Revenue history is short, but we can review with additional documentation.",
            "declined": "Revenue levels are currently too low for this commercial card product.",
        },
    },
]


class ProductCatalog:
    """Immutable, id-unique collection of products.

    Attributes:
        products: Tuple of products in load order
    """

    def __init__(self, products: Iterable[Product]):
        self.products: Tuple[Product, ...] = tuple(products)
        self._by_id: Dict[str, Product] = {}
        for product in self.products:
            if product.id in self._by_id:
                raise DuplicateProductError(f"Duplicate product id in catalog: {product.id}")
            self._by_id[product.id] = product

    @classmethod
    def from_config(cls, entries: Iterable[dict]) -> "ProductCatalog":
        """Build a catalog from raw configuration dictionaries."""
        return cls(Product.model_validate(entry) for entry in entries)

    def __iter__(self) -> Iterator[Product]:
        return iter(self.products)

    def __len__(self) -> int:
        return len(self.products)

    def __contains__(self, product_id: str) -> bool:
        return product_id in self._by_id

    def get(self, product_id: str) -> Product:
        """Look up a product by id.

        Raises:
            KeyError: If the id is not in the catalog
        """
        return self._by_id[product_id]

    def products_for(self, kind: CustomerKind) -> Tuple[Product, ...]:
        """Products targeting the given customer kind, BOTH included."""
        kind = CustomerKind(kind)
        return tuple(
            product for product in self.products
            if product.target_customer_type == TargetCustomerKind.BOTH
            or product.target_customer_type.value == kind.value
        )


_default_catalog: Optional[ProductCatalog] = None


def default_catalog() -> ProductCatalog:
    """Get the shared demo catalog (built once)."""
    global _default_catalog

    if _default_catalog is None:
        _default_catalog = ProductCatalog.from_config(DEMO_PRODUCTS)
    return _default_catalog


_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")


def render_template(template: str, product: Product, profile: Optional[CustomerProfile] = None) -> str:
    """Fill {{productName}} and {{<profileField>}} placeholders.

    Profile fields may be referenced in camelCase or snake_case. Unknown or
    empty placeholders are left as they are.
    """
    values = {"productName": product.name}
    if profile is not None:
        for by_alias in (True, False):
            for field_name, value in profile.model_dump(mode="json", by_alias=by_alias).items():
                if isinstance(value, (int, float)) and not isinstance(value, bool):
                    values.setdefault(field_name, format_limit(value))
                elif isinstance(value, str):
                    values.setdefault(field_name, value)

    def _replace(match):
        return values.get(match.group(1), match.group(0))

    return _PLACEHOLDER.sub(_replace, template)
