from __future__ import annotations

from typing import Any

import httpx

from receptionist.config import settings


class ShopifyApiError(RuntimeError):
    def __init__(self, *, message: str, status_code: int = 502) -> None:
        super().__init__(message)
        self.status_code = status_code


class ShopifyReauthRequiredError(ShopifyApiError):
    """The stored access token was rejected; the merchant must reinstall."""

    def __init__(self, *, message: str) -> None:
        super().__init__(message=message, status_code=401)


class ShopifyRateLimitError(ShopifyApiError):
    def __init__(self, *, message: str, retry_after: float | None = None) -> None:
        super().__init__(message=message, status_code=429)
        self.retry_after = retry_after


class ShopifyGraphQLError(ShopifyApiError):
    def __init__(self, *, message: str, errors: list[Any]) -> None:
        super().__init__(message=message)
        self.errors = errors


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


class ShopifyApiClient:
    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._timeout = settings.SHOPIFY_REQUEST_TIMEOUT_SECONDS
        self._transport = transport

    async def exchange_code_for_access_token(self, *, shop_domain: str, code: str) -> tuple[str, str]:
        url = f"https://{shop_domain}/admin/oauth/access_token"
        payload = {
            "client_id": settings.SHOPIFY_APP_API_KEY,
            "client_secret": settings.SHOPIFY_APP_API_SECRET,
            "code": code,
        }
        response = await self._post_json(url=url, payload=payload)
        access_token = response.get("access_token")
        scopes = response.get("scope")
        if not isinstance(access_token, str) or not access_token:
            raise ShopifyApiError(message="OAuth token exchange response is missing access_token")
        if not isinstance(scopes, str):
            raise ShopifyApiError(message="OAuth token exchange response is missing scope")
        return access_token, scopes

    async def register_webhook(
        self,
        *,
        shop_domain: str,
        access_token: str,
        topic: str,
        callback_url: str,
    ) -> str:
        query = """
        mutation webhookSubscriptionCreate(
            $topic: WebhookSubscriptionTopic!
            $webhookSubscription: WebhookSubscriptionInput!
        ) {
            webhookSubscriptionCreate(topic: $topic, webhookSubscription: $webhookSubscription) {
                webhookSubscription {
                    id
                }
                userErrors {
                    field
                    message
                }
            }
        }
        """
        response = await self.admin_graphql(
            shop_domain=shop_domain,
            access_token=access_token,
            query=query,
            variables={
                "topic": topic,
                "webhookSubscription": {
                    "callbackUrl": callback_url,
                    "format": "JSON",
                },
            },
        )
        create_data = response.get("webhookSubscriptionCreate") or {}
        user_errors = create_data.get("userErrors") or []
        if user_errors:
            if self._has_duplicate_webhook_address_error(user_errors):
                existing_id = await self._find_existing_http_webhook_id(
                    shop_domain=shop_domain,
                    access_token=access_token,
                    topic=topic,
                    callback_url=callback_url,
                )
                if existing_id:
                    return existing_id
            messages = "; ".join(str(error.get("message")) for error in user_errors)
            raise ShopifyApiError(message=f"Webhook registration failed for {topic}: {messages}")
        webhook = create_data.get("webhookSubscription") or {}
        webhook_id = webhook.get("id")
        if not isinstance(webhook_id, str) or not webhook_id:
            raise ShopifyApiError(message=f"Webhook registration for {topic} returned no id")
        return webhook_id

    @staticmethod
    def _has_duplicate_webhook_address_error(user_errors: list[dict[str, Any]]) -> bool:
        for error in user_errors:
            message = error.get("message")
            if isinstance(message, str) and "already been taken" in message.lower():
                return True
        return False

    async def _find_existing_http_webhook_id(
        self,
        *,
        shop_domain: str,
        access_token: str,
        topic: str,
        callback_url: str,
    ) -> str | None:
        query = """
        query webhookSubscriptionsByTopic($topics: [WebhookSubscriptionTopic!]) {
            webhookSubscriptions(first: 50, topics: $topics) {
                edges {
                    node {
                        id
                        endpoint {
                            __typename
                            ... on WebhookHttpEndpoint {
                                callbackUrl
                            }
                        }
                    }
                }
            }
        }
        """
        response = await self.admin_graphql(
            shop_domain=shop_domain,
            access_token=access_token,
            query=query,
            variables={"topics": [topic]},
        )
        target_url = callback_url.rstrip("/")
        subscriptions = (response.get("webhookSubscriptions") or {}).get("edges") or []
        for edge in subscriptions:
            node = edge.get("node") or {}
            endpoint = node.get("endpoint") or {}
            if endpoint.get("__typename") != "WebhookHttpEndpoint":
                continue
            endpoint_callback = endpoint.get("callbackUrl")
            if isinstance(endpoint_callback, str) and endpoint_callback.rstrip("/") == target_url:
                webhook_id = node.get("id")
                if isinstance(webhook_id, str) and webhook_id:
                    return webhook_id
        return None

    @staticmethod
    def _coerce_product_node(node: dict[str, Any]) -> dict[str, Any]:
        product_id = node.get("id")
        title = node.get("title")
        if not isinstance(product_id, str) or not product_id:
            raise ShopifyApiError(message="Product response is missing product.id")
        if not isinstance(title, str) or not title:
            raise ShopifyApiError(message="Product response is missing product.title")

        variant_edges = ((node.get("variants") or {}).get("edges")) or []
        first_variant: dict[str, Any] = {}
        if variant_edges and isinstance(variant_edges[0], dict):
            first_variant = variant_edges[0].get("node") or {}

        return {
            "id": product_id,
            "title": title,
            "description": node.get("description") or "",
            "status": node.get("status"),
            "productType": node.get("productType"),
            "vendor": node.get("vendor"),
            "price": first_variant.get("price") or "0.00",
            "inventory": first_variant.get("inventoryQuantity") or 0,
            "availableForSale": bool(first_variant.get("availableForSale")),
            "sku": first_variant.get("sku") or "",
        }

    def _coerce_product_edges(self, response: dict[str, Any]) -> list[dict[str, Any]]:
        edges = ((response.get("products") or {}).get("edges")) or []
        if not isinstance(edges, list):
            raise ShopifyApiError(message="Product list response is invalid")
        products: list[dict[str, Any]] = []
        for edge in edges:
            if not isinstance(edge, dict):
                continue
            node = edge.get("node")
            if not isinstance(node, dict):
                continue
            products.append(self._coerce_product_node(node))
        return products

    async def list_products(
        self,
        *,
        shop_domain: str,
        access_token: str,
        limit: int = 10,
    ) -> list[dict[str, Any]]:
        query = """
        query getProducts($first: Int!) {
            products(first: $first) {
                edges {
                    node {
                        id
                        title
                        description
                        status
                        variants(first: 5) {
                            edges {
                                node {
                                    id
                                    price
                                    inventoryQuantity
                                    availableForSale
                                }
                            }
                        }
                    }
                }
            }
        }
        """
        response = await self.admin_graphql(
            shop_domain=shop_domain,
            access_token=access_token,
            query=query,
            variables={"first": limit},
        )
        return self._coerce_product_edges(response)

    async def search_products(
        self,
        *,
        shop_domain: str,
        access_token: str,
        query: str,
        limit: int = 10,
    ) -> list[dict[str, Any]]:
        graphql_query = """
        query searchProducts($query: String!, $first: Int!) {
            products(first: $first, query: $query) {
                edges {
                    node {
                        id
                        title
                        description
                        status
                        productType
                        vendor
                        variants(first: 5) {
                            edges {
                                node {
                                    id
                                    price
                                    inventoryQuantity
                                    availableForSale
                                    sku
                                }
                            }
                        }
                    }
                }
            }
        }
        """
        response = await self.admin_graphql(
            shop_domain=shop_domain,
            access_token=access_token,
            query=graphql_query,
            variables={"query": query.strip(), "first": limit},
        )
        return self._coerce_product_edges(response)

    async def get_order_status(
        self,
        *,
        shop_domain: str,
        access_token: str,
        order_number: str | None = None,
        email: str | None = None,
    ) -> dict[str, Any] | None:
        if order_number:
            search_query = f"name:{order_number}"
        elif email:
            search_query = f"email:{email}"
        else:
            raise ShopifyApiError(message="Either order_number or email is required", status_code=400)

        query = """
        query getOrder($query: String!, $first: Int!) {
            orders(first: $first, query: $query, sortKey: CREATED_AT, reverse: true) {
                edges {
                    node {
                        id
                        name
                        displayFulfillmentStatus
                        displayFinancialStatus
                        totalPriceSet {
                            shopMoney {
                                amount
                                currencyCode
                            }
                        }
                        createdAt
                        customer {
                            email
                            firstName
                            lastName
                        }
                        lineItems(first: 5) {
                            edges {
                                node {
                                    title
                                    quantity
                                }
                            }
                        }
                    }
                }
            }
        }
        """
        response = await self.admin_graphql(
            shop_domain=shop_domain,
            access_token=access_token,
            query=query,
            variables={"query": search_query, "first": 1},
        )
        edges = ((response.get("orders") or {}).get("edges")) or []
        if not edges or not isinstance(edges[0], dict):
            return None
        node = edges[0].get("node") or {}
        name = node.get("name")
        if not isinstance(name, str) or not name:
            raise ShopifyApiError(message="Order response is missing order.name")

        shop_money = ((node.get("totalPriceSet") or {}).get("shopMoney")) or {}
        line_items = []
        for item_edge in ((node.get("lineItems") or {}).get("edges")) or []:
            item = (item_edge or {}).get("node") or {}
            line_items.append({"title": item.get("title"), "quantity": item.get("quantity")})

        return {
            "id": node.get("id"),
            "name": name,
            "displayFulfillmentStatus": node.get("displayFulfillmentStatus"),
            "displayFinancialStatus": node.get("displayFinancialStatus"),
            "totalPrice": shop_money.get("amount") or "0.00",
            "currency": shop_money.get("currencyCode") or "USD",
            "createdAt": node.get("createdAt"),
            "customer": node.get("customer"),
            "items": line_items,
        }

    @staticmethod
    def _assert_no_user_errors(*, user_errors: list[dict[str, Any]], mutation_name: str) -> None:
        if user_errors:
            messages = "; ".join(str(error.get("message")) for error in user_errors)
            raise ShopifyApiError(message=f"{mutation_name} failed: {messages}", status_code=409)

    async def create_product(
        self,
        *,
        shop_domain: str,
        access_token: str,
        title: str,
    ) -> dict[str, Any]:
        query = """
        mutation populateProduct($product: ProductCreateInput!) {
            productCreate(product: $product) {
                product {
                    id
                    title
                    handle
                    status
                    variants(first: 10) {
                        edges {
                            node {
                                id
                                price
                                barcode
                                createdAt
                            }
                        }
                    }
                }
                userErrors {
                    field
                    message
                }
            }
        }
        """
        response = await self.admin_graphql(
            shop_domain=shop_domain,
            access_token=access_token,
            query=query,
            variables={"product": {"title": title}},
        )
        create_data = response.get("productCreate") or {}
        self._assert_no_user_errors(
            user_errors=create_data.get("userErrors") or [],
            mutation_name="productCreate",
        )
        product = create_data.get("product")
        if not isinstance(product, dict) or not product.get("id"):
            raise ShopifyApiError(message="productCreate response is missing product.id")
        return product

    async def update_variant_prices(
        self,
        *,
        shop_domain: str,
        access_token: str,
        product_gid: str,
        variants: list[dict[str, str]],
    ) -> list[dict[str, Any]]:
        query = """
        mutation updateVariantPrices($productId: ID!, $variants: [ProductVariantsBulkInput!]!) {
            productVariantsBulkUpdate(productId: $productId, variants: $variants) {
                productVariants {
                    id
                    price
                    barcode
                    createdAt
                }
                userErrors {
                    field
                    message
                }
            }
        }
        """
        response = await self.admin_graphql(
            shop_domain=shop_domain,
            access_token=access_token,
            query=query,
            variables={"productId": product_gid, "variants": variants},
        )
        update_data = response.get("productVariantsBulkUpdate") or {}
        self._assert_no_user_errors(
            user_errors=update_data.get("userErrors") or [],
            mutation_name="productVariantsBulkUpdate",
        )
        return update_data.get("productVariants") or []

    async def admin_graphql(
        self,
        *,
        shop_domain: str,
        access_token: str,
        query: str,
        variables: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        if not shop_domain or not access_token:
            raise ShopifyReauthRequiredError(message="Invalid session: missing shop or access token")
        url = f"https://{shop_domain}/admin/api/{settings.SHOPIFY_ADMIN_API_VERSION}/graphql.json"
        headers = {
            "Content-Type": "application/json",
            "X-Shopify-Access-Token": access_token,
        }
        response = await self._post_json(
            url=url,
            payload={"query": query, "variables": variables or {}},
            headers=headers,
        )
        data = response.get("data")
        errors = response.get("errors")
        if errors:
            first_message = None
            if isinstance(errors, list) and errors and isinstance(errors[0], dict):
                first_message = errors[0].get("message")
            raise ShopifyGraphQLError(
                message=f"Admin GraphQL error: {first_message or 'Unknown error'}",
                errors=errors if isinstance(errors, list) else [errors],
            )
        if not isinstance(data, dict):
            raise ShopifyApiError(message="Admin GraphQL response is missing data")
        return data

    async def _post_json(
        self,
        *,
        url: str,
        payload: dict[str, Any],
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(url, json=payload, headers=headers)
        except httpx.RequestError as exc:
            raise ShopifyApiError(message=f"Network error while calling Shopify: {exc}") from exc

        if response.status_code in (401, 403):
            raise ShopifyReauthRequiredError(
                message=f"Shopify authentication failed ({response.status_code}); the app must be reinstalled",
            )
        if response.status_code == 429:
            raise ShopifyRateLimitError(
                message="Shopify rate limit exceeded; try again later",
                retry_after=_parse_retry_after(response.headers.get("Retry-After")),
            )
        if response.status_code >= 400:
            raise ShopifyApiError(
                message=f"Shopify API call failed ({response.status_code}): {response.text}",
                status_code=502,
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise ShopifyApiError(message="Shopify API returned invalid JSON") from exc

        if not isinstance(body, dict):
            raise ShopifyApiError(message="Shopify API response must be a JSON object")
        return body
