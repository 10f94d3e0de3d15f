"""WooCommerce storefront tools.

Every tool maps 1:1 to a method of the storefront worker process; the
tool name is ``woocommerce_<method>`` and parameters travel in camelCase.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import Field

from agent_workspace.services.vault import STOREFRONT
from agent_workspace.tools.base import ToolParams, ToolSpec

TOOL_PREFIX = "woocommerce_"


# ── Parameters ──────────────────────────────────────────────────────


class PageParams(ToolParams):
    per_page: int | None = Field(None, ge=1, le=100, description="Results per page (default 10)")
    page: int | None = Field(None, ge=1, description="Page number, starting at 1")


class ProductListParams(PageParams):
    search: str | None = Field(None, description="Text to search in product names")
    category: str | None = Field(None, description="Category id")
    status: str | None = Field(None, description="Product status, e.g. 'publish' or 'draft'")


class ProductIdParams(ToolParams):
    product_id: int = Field(..., description="Product id")


class ProductCreateParams(ToolParams):
    product_data: dict[str, Any] = Field(
        ..., description="WooCommerce product fields, e.g. name, regular_price, description",
    )


class ProductUpdateParams(ProductIdParams):
    product_data: dict[str, Any] = Field(..., description="Product fields to change")


class ProductDeleteParams(ProductIdParams):
    force: bool | None = Field(None, description="Delete permanently instead of moving to trash")


class OrderListParams(PageParams):
    status: str | None = Field(None, description="Order status, e.g. 'processing' or 'completed'")
    customer: int | None = Field(None, description="Customer id")


class OrderIdParams(ToolParams):
    order_id: int = Field(..., description="Order id")


class OrderUpdateParams(OrderIdParams):
    order_data: dict[str, Any] = Field(..., description="Order fields to change, e.g. status")


class CustomerListParams(PageParams):
    search: str | None = Field(None, description="Text to search in customer names or emails")
    email: str | None = Field(None, description="Exact customer email")


class CustomerIdParams(ToolParams):
    customer_id: int = Field(..., description="Customer id")


class ReportParams(ToolParams):
    period: Literal["week", "month", "last_month", "year"] | None = Field(
        None, description="Predefined period",
    )
    date_min: str | None = Field(None, description="Start date, YYYY-MM-DD")
    date_max: str | None = Field(None, description="End date, YYYY-MM-DD")


# ── Catalog entries ─────────────────────────────────────────────────


def _storefront_tool(
    method: str,
    description: str,
    params: type[ToolParams],
    display_name: str,
    subject: str | None = None,
) -> ToolSpec:
    """Build a storefront spec; ``subject`` names the id argument shown to the user."""

    def describe(args: dict[str, Any]) -> str:
        if subject and args.get(subject) is not None:
            return f"{display_name} #{args[subject]}"
        return display_name

    return ToolSpec(
        name=f"{TOOL_PREFIX}{method}",
        description=description,
        params=params,
        family=STOREFRONT,
        display_name=lambda args: display_name,
        describe=describe,
        method=method,
    )


STOREFRONT_TOOLS: list[ToolSpec] = [
    _storefront_tool("get_products", "List store products, optionally filtered.", ProductListParams,
                     "List products"),
    _storefront_tool("get_product", "Get one product by id.", ProductIdParams,
                     "Get product", "productId"),
    _storefront_tool("create_product", "Create a new product.", ProductCreateParams,
                     "Create product"),
    _storefront_tool("update_product", "Update fields of an existing product.", ProductUpdateParams,
                     "Update product", "productId"),
    _storefront_tool("delete_product", "Delete a product by id.", ProductDeleteParams,
                     "Delete product", "productId"),
    _storefront_tool("get_orders", "List store orders, optionally filtered.", OrderListParams,
                     "List orders"),
    _storefront_tool("get_order", "Get one order by id.", OrderIdParams,
                     "Get order", "orderId"),
    _storefront_tool("update_order", "Update an order, e.g. its status.", OrderUpdateParams,
                     "Update order", "orderId"),
    _storefront_tool("get_customers", "List store customers, optionally filtered.", CustomerListParams,
                     "List customers"),
    _storefront_tool("get_customer", "Get one customer by id.", CustomerIdParams,
                     "Get customer", "customerId"),
    _storefront_tool("get_sales_report", "Sales totals for a period.", ReportParams,
                     "Sales report"),
    _storefront_tool("get_products_report", "Top-selling products for a period.", ReportParams,
                     "Products report"),
    _storefront_tool("get_orders_report", "Order totals by status for a period.", ReportParams,
                     "Orders report"),
    _storefront_tool("get_categories_report", "Sales by product category for a period.", ReportParams,
                     "Categories report"),
]
