import time
import requests


class FFClient:
    def __init__(self, api_url: str, timeout: float = 2.0, cache_ttl: float = 30.0):
        self.api_url = api_url.rstrip('/')
        self.timeout = timeout
        self.cache_ttl = cache_ttl
        self._cache = {}  # (feature, user) -> (value, ts)

    def _get(self, path: str, params=None):
        url = f"{self.api_url}{path}"
        r = requests.get(url, params=params, timeout=self.timeout)
        r.raise_for_status()
        return r.json()

    def is_active(self, feature: str, user_id: str | None = None) -> bool:
        now = time.time()
        cache_key = (feature, user_id)
        cached = self._cache.get(cache_key)
        if cached and (now - cached[1] < self.cache_ttl):
            return cached[0]
        params = {"user": user_id} if user_id is not None else None
        data = self._get(f"/features/{feature}/active", params=params)
        self._cache[cache_key] = (data["active"], now)
        return data["active"]

    def active_features(self, user_id: str | None = None) -> list:
        params = {"user": user_id} if user_id is not None else None
        return self._get("/active-features", params=params)

    def invalidate(self, feature: str | None = None):
        if feature is None:
            self._cache.clear()
            return
        for key in [k for k in self._cache if k[0] == feature]:
            del self._cache[key]
