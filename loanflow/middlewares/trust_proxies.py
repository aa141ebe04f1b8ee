from starlette.types import ASGIApp, Receive, Scope, Send


class TrustedProxiesMiddleware:
    """Resolve the caller IP from X-Forwarded-For, trusting only the last ``proxies_count`` hops."""

    def __init__(self, app: ASGIApp, proxies_count: int = 1) -> None:
        self.app = app
        self.proxies_count = proxies_count

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http" and self.proxies_count > 0:
            headers = dict(scope.get("headers", []))
            forwarded_for = headers.get(b"x-forwarded-for", b"").decode()
            if forwarded_for:
                ips = [ip.strip() for ip in forwarded_for.split(",") if ip.strip()]
                # "client, proxy1, proxy2": with N trusted proxies the client sits at -(N+1).
                if len(ips) > self.proxies_count:
                    port = scope["client"][1] if scope.get("client") else 0
                    scope["client"] = (ips[-(self.proxies_count + 1)], port)

        await self.app(scope, receive, send)
