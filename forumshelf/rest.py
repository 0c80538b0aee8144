"""
Thin client for the hosted database's HTTP APIs (PostgREST + GoTrue).

Only what the bookmarks page needs: table selects and deletes, one RPC,
and the password / refresh-token grants for signing in.
"""

from __future__ import annotations

import requests

DEFAULT_TIMEOUT = 10


class SupabaseError(RuntimeError):
    """Transport failure or non-2xx answer from the platform."""

    def __init__(self, message: str, *, status: int | None = None):
        super().__init__(message)
        self.status = status


def in_list(values) -> str:
    """PostgREST ``in.(…)`` filter value."""
    return "in.(" + ",".join(str(v) for v in values) + ")"


class SupabaseRest:
    def __init__(
        self,
        url: str,
        anon_key: str,
        *,
        access_token: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        http=None,
    ):
        if not url or not anon_key:
            raise SupabaseError("SUPABASE_URL / SUPABASE_ANON_KEY are not configured")
        self.url = url.rstrip("/")
        self.anon_key = anon_key
        self.access_token = access_token
        self.timeout = timeout
        self.http = http or requests.Session()

    # ──── plumbing ──────────────────────────────────────────────
    def _headers(self, extra: dict | None = None) -> dict:
        headers = {
            "apikey": self.anon_key,
            # row-level security keys off the user's JWT, not the anon key
            "Authorization": f"Bearer {self.access_token or self.anon_key}",
            "Accept": "application/json",
        }
        if extra:
            headers.update(extra)
        return headers

    def _request(self, method: str, path: str, *, params=None, json=None, headers=None):
        try:
            resp = self.http.request(
                method,
                f"{self.url}{path}",
                params=params,
                json=json,
                headers=self._headers(headers),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise SupabaseError(f"{method} {path} failed: {exc}") from exc

        if resp.status_code >= 400:
            raise SupabaseError(_error_message(resp), status=resp.status_code)
        if resp.status_code == 204 or not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            raise SupabaseError(f"{method} {path}: response is not JSON") from exc

    # ──── tables ────────────────────────────────────────────────
    def select(self, table: str, columns: str = "*", *, order: str | None = None, **filters):
        """
        ``GET /rest/v1/<table>`` – *filters* are PostgREST operators,
        e.g. ``user_id="eq.42"``.
        """
        params = {"select": columns, **filters}
        if order:
            params["order"] = order
        return self._request("GET", f"/rest/v1/{table}", params=params) or []

    def delete(self, table: str, **filters) -> None:
        if not filters:
            raise ValueError("refusing to delete without a filter")
        self._request(
            "DELETE",
            f"/rest/v1/{table}",
            params=filters,
            headers={"Prefer": "return=minimal"},
        )

    def rpc(self, fn: str, args: dict | None = None):
        return self._request("POST", f"/rest/v1/rpc/{fn}", json=args or {})

    # ──── auth ──────────────────────────────────────────────────
    def sign_in_with_password(self, email: str, password: str) -> dict:
        return self._request(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        )

    def refresh_session(self, refresh_token: str) -> dict:
        return self._request(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "refresh_token"},
            json={"refresh_token": refresh_token},
        )

    def ping(self) -> None:
        """Cheap reachability check against the PostgREST root."""
        self._request("GET", "/rest/v1/")


def _error_message(resp) -> str:
    try:
        body = resp.json()
    except ValueError:
        return f"HTTP {resp.status_code}: {resp.text[:200]}"
    if isinstance(body, dict):
        for key in ("message", "msg", "error_description", "error"):
            if body.get(key):
                return f"HTTP {resp.status_code}: {body[key]}"
    return f"HTTP {resp.status_code}"
