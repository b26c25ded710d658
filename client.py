"""
API client for the marketplace

Reads are cached per path and query for a short TTL; writes drop the cached
reads they make stale. Order lists pass through the order status override
cache so a status change shows up immediately, before the server's own
read path catches up.
"""
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from overrides import OrderStatusOverrides, default_overrides

logger = logging.getLogger("farmfresh.client")

CACHE_TTL_SECONDS = 30


class MarketAPIError(Exception):
    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(f"HTTP {status_code}: {message}")


class MarketClient:
    def __init__(self, base_url: str = "", token: Optional[str] = None, http: Optional[httpx.Client] = None,
                 overrides: Optional[OrderStatusOverrides] = None, clock: Callable[[], float] = time.time,
                 cache_ttl: float = CACHE_TTL_SECONDS):
        self.http = http if http is not None else httpx.Client(base_url=base_url)
        self.token = token
        self.overrides = overrides if overrides is not None else default_overrides()
        self.clock = clock
        self.cache_ttl = cache_ttl
        self._cache: Dict[Tuple[str, Tuple], Tuple[float, Any]] = {}

    def close(self):
        self.overrides.flush()
        self.http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    # Transport

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}

    def _request(self, method: str, path: str, params=None, json=None) -> Any:
        response = self.http.request(method, path, params=params, json=json, headers=self._headers())
        if response.is_error:
            try:
                message = response.json().get("error") or response.reason_phrase
            except ValueError:
                message = response.reason_phrase
            logger.warning("api_error method=%s path=%s status=%s", method, path, response.status_code)
            raise MarketAPIError(response.status_code, message)
        return response.json()

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None, cached: bool = True) -> Any:
        params = {k: v for k, v in (params or {}).items() if v is not None}
        key = (path, tuple(sorted(params.items())))
        now = self.clock()
        if cached:
            hit = self._cache.get(key)
            if hit and now - hit[0] < self.cache_ttl:
                return hit[1]
        data = self._request("GET", path, params=params)
        self._cache[key] = (now, data)
        return data

    def invalidate(self, *prefixes: str):
        for key in list(self._cache):
            if any(key[0].startswith(p) for p in prefixes):
                del self._cache[key]

    # Cart

    def get_cart(self) -> dict:
        return self._get("/cart")

    def save_cart(self, items: List[Dict[str, Any]]) -> dict:
        data = self._request("POST", "/cart", json={"items": items})
        self.invalidate("/cart")
        return data

    def clear_cart(self) -> dict:
        data = self._request("DELETE", "/cart")
        self.invalidate("/cart")
        return data

    # Orders

    def get_orders(self, farmer_email: Optional[str] = None, cached: bool = True, **filters) -> dict:
        data = self._get("/orders", {"farmerEmail": farmer_email, **filters}, cached=cached)
        return {**data, "orders": self.overrides.apply(data.get("orders") or [], farmer_email)}

    def place_order(self, items: List[Dict[str, Any]], **details) -> dict:
        data = self._request("POST", "/orders", json={"items": items, **details})
        self.invalidate("/orders", "/cart", "/products")
        return data

    def reorder(self, order_id: str) -> dict:
        """Cart-ready lines for a past order; pass data["items"] to save_cart to use them."""
        return self._request("POST", f"/orders/{order_id}/reorder")

    def update_order_status(self, order_id: str, status: str, farmer_email: Optional[str] = None,
                            note: Optional[str] = None) -> dict:
        payload = {"status": status, "farmerEmail": farmer_email, "note": note}
        data = self._request("PATCH", f"/orders/{order_id}", json={k: v for k, v in payload.items() if v})
        # A scoped change records the farmer's own status; the order-level
        # status may legitimately read "mixed".
        if farmer_email:
            self.overrides.record(order_id, status, farmer_email)
        else:
            self.overrides.record(order_id, (data.get("order") or {}).get("status") or status)
        self.invalidate("/orders", "/products")
        return data

    # Reviews

    def get_reviews(self, product_id: str, page: int = 1, limit: int = 5, user_id: Optional[str] = None) -> dict:
        return self._get(f"/products/{product_id}/reviews", {"page": page, "limit": limit, "userId": user_id})

    def can_review(self, product_id: str, user_id: str) -> dict:
        return self._get(f"/products/{product_id}/can-review", {"userId": user_id}, cached=False)

    def create_review(self, product_id: str, user_id: str, rating: int, comment: str) -> dict:
        data = self._request("POST", f"/products/{product_id}/reviews",
                             json={"userId": user_id, "rating": rating, "comment": comment})
        self.invalidate(f"/products/{product_id}", "/products")
        return data

    def update_review(self, review_id: str, user_id: str, rating: int, comment: str) -> dict:
        data = self._request("PUT", f"/reviews/{review_id}",
                             json={"userId": user_id, "rating": rating, "comment": comment})
        self.invalidate("/products")
        return data

    def delete_review(self, review_id: str, user_id: str) -> dict:
        data = self._request("DELETE", f"/reviews/{review_id}", params={"userId": user_id})
        self.invalidate("/products")
        return data
