"""
FastAPI application for the FairLens suitability engine.
Exposes the product catalog, deterministic scoring and the product
configuration generator as REST endpoints.
"""

import logging
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel, Field

from fairlens.ai_services import AzureProductGenerator, ProductGenerator
from fairlens.catalog import ProductCatalog, default_catalog
from fairlens.config import configure_logging
from fairlens.exceptions import ConfigurationError, ProductGenerationError
from fairlens.models import CustomerKind, CustomerProfile, EvaluationResult, Product
from fairlens.scoring import evaluate_all

configure_logging()
logger = logging.getLogger(__name__)


class EvaluateRequest(BaseModel):
    """Request payload for scoring a profile against the catalog."""
    profile: CustomerProfile
    product_ids: Optional[List[str]] = Field(
        default=None,
        description="Restrict scoring to these products. Defaults to every product matching the customer type.",
    )


class GenerateProductRequest(BaseModel):
    description: str = Field(min_length=1)


def get_catalog() -> ProductCatalog:
    return default_catalog()


def get_product_generator() -> ProductGenerator:
    return AzureProductGenerator()


app = FastAPI(title="FairLens Suitability API")


# ================
#   PRODUCT CATALOG
# ================
@app.get(
    "/products",
    response_model=List[Product],
    description="Lists catalog products. Pass customer_type to get only the products offered to INDIVIDUAL or SME customers.",
)
async def list_products(customer_type: Optional[CustomerKind] = None, catalog: ProductCatalog = Depends(get_catalog)):
    if customer_type is None:
        return list(catalog.products)
    return list(catalog.products_for(customer_type))


@app.get(
    "/products/{product_id}",
    response_model=Product,
    description="Returns one product definition with its constraints, scoring weights and thresholds.",
)
async def get_product(product_id: str, catalog: ProductCatalog = Depends(get_catalog)):
    if product_id not in catalog:
        raise HTTPException(404, "Product not found")
    return catalog.get(product_id)


# ================
#   SCORING
# ================
@app.post(
    "/evaluate",
    response_model=List[EvaluationResult],
    description="Scores a customer profile against catalog products: eligibility, weighted score, decision and reasons. No AI calls.",
)
async def evaluate_profile(request: EvaluateRequest, catalog: ProductCatalog = Depends(get_catalog)):
    if request.product_ids is None:
        products = catalog.products_for(request.profile.customer_type)
    else:
        unknown = [product_id for product_id in request.product_ids if product_id not in catalog]
        if unknown:
            raise HTTPException(404, f"Unknown products: {', '.join(unknown)}")
        products = [catalog.get(product_id) for product_id in request.product_ids]
    return evaluate_all(request.profile, products)


# ================
#   PRODUCT GENERATOR
# ================
@app.post(
    "/products/generate",
    response_model=Product,
    description="Converts a natural-language product description into a product configuration (best effort, not added to the catalog).",
)
async def generate_product(
    request: GenerateProductRequest,
    generator: ProductGenerator = Depends(get_product_generator),
):
    try:
        return await generator.generate(request.description)
    except ConfigurationError as exc:
        raise HTTPException(500, str(exc)) from exc
    except ProductGenerationError as exc:
        logger.warning("Product generation failed: %s", exc)
        raise HTTPException(502, "Failed to generate product config.") from exc


@app.get("/health")
async def health():
    return {"status": "healthy"}
