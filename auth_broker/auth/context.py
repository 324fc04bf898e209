"""Framework independent request context handed to the broker."""
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional
from urllib.parse import urljoin

from auth_broker.auth.cookies import CookieJar


@dataclass
class RequestContext:
    """
    Everything a broker flow needs to know about one HTTP request.

    Attributes:
        base_url: Scheme and host of the broker, e.g. ``https://app.example.com``.
        query: Query string parameters, first value kept for a repeated name.
        headers: Request headers with lower-cased names.
        client_identity: Opaque rate-limit key for the caller.
        cookies: Incoming cookies and queued response writes.
        request_id: Correlation id for logs.
    """

    base_url: str
    query: Mapping[str, str] = field(default_factory=dict)
    headers: Mapping[str, str] = field(default_factory=dict)
    client_identity: str = "anonymous"
    cookies: CookieJar = field(default_factory=CookieJar)
    request_id: Optional[str] = None

    def absolute_url(self, path: str) -> str:
        return urljoin(self.base_url.rstrip("/") + "/", path.lstrip("/"))

    @property
    def user_agent(self) -> str:
        return self.headers.get("user-agent", "")

    def log_extra(self) -> Dict[str, Optional[str]]:
        return {"request_id": self.request_id, "user_agent": self.user_agent[:100]}
