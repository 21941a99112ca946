"""
GraphiQL playground page.

Usage:
    from gqlgate.playground import mount_playground

    # Mount to FastAPI app
    mount_playground(app, path="/playground", endpoint="/graphql")

    # Or get HTML directly
    from gqlgate.playground import get_playground_html
    html = get_playground_html(endpoint="/graphql", subscription_endpoint="/subscriptions")
"""

from __future__ import annotations

import html as html_escape
import json
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import HTMLResponse

GRAPHIQL_VERSION = "3.0.9"

_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="utf-8" />
    <title>{title}</title>
    <link rel="stylesheet" href="https://unpkg.com/graphiql@{version}/graphiql.min.css" />
    <style>body {{ margin: 0; height: 100vh; }} #graphiql {{ height: 100vh; }}</style>
</head>
<body>
    <div id="graphiql">Loading...</div>
    <script crossorigin src="https://unpkg.com/react@18/umd/react.production.min.js"></script>
    <script crossorigin src="https://unpkg.com/react-dom@18/umd/react-dom.production.min.js"></script>
    <script crossorigin src="https://unpkg.com/graphiql@{version}/graphiql.min.js"></script>
    <script>
        window.GQLGATE_CONFIG = {config};
    </script>
    <script>
        (function () {{
            var config = window.GQLGATE_CONFIG;
            var url = new URL(config.endpoint, window.location.href).toString();
            var subscriptionUrl = null;
            if (config.subscriptionEndpoint) {{
                var ws = new URL(config.subscriptionEndpoint, window.location.href);
                ws.protocol = ws.protocol === "https:" ? "wss:" : "ws:";
                subscriptionUrl = ws.toString();
            }}
            var fetcher = GraphiQL.createFetcher({{
                url: url,
                subscriptionUrl: subscriptionUrl,
                headers: config.headers,
            }});
            ReactDOM.createRoot(document.getElementById("graphiql")).render(
                React.createElement(GraphiQL, {{
                    fetcher: fetcher,
                    defaultHeaders: JSON.stringify(config.headers, null, 2),
                }})
            );
        }})();
    </script>
</body>
</html>
"""


def get_playground_html(
    *,
    endpoint: str = "/graphql",
    subscription_endpoint: Optional[str] = None,
    headers: Optional[dict[str, str]] = None,
    title: str = "GraphQL Playground",
) -> str:
    """
    Get playground HTML with injected configuration.

    Args:
        endpoint: URL of the GraphQL endpoint
        subscription_endpoint: URL of the WebSocket endpoint (optional)
        headers: Headers sent with every request
        title: Page title

    Returns:
        HTML string
    """
    config = json.dumps({
        "endpoint": endpoint,
        "subscriptionEndpoint": subscription_endpoint,
        "headers": headers or {},
    })
    # keep the JSON from closing the script element
    config = config.replace("</", "<\\/")

    return _TEMPLATE.format(
        title=html_escape.escape(title),
        version=GRAPHIQL_VERSION,
        config=config,
    )


def mount_playground(
    app: FastAPI,
    path: str = "/playground",
    endpoint: str = "/graphql",
    subscription_endpoint: Optional[str] = None,
    headers: Optional[dict[str, str]] = None,
    title: str = "GraphQL Playground",
) -> None:
    """
    Mount the playground to a FastAPI application.

    Args:
        app: FastAPI application
        path: URL path for playground (default: /playground)
        endpoint: URL of the GraphQL endpoint
        subscription_endpoint: URL of the WebSocket endpoint
        headers: Headers sent with every request
        title: Page title

    Example:
        from fastapi import FastAPI
        from gqlgate.playground import mount_playground

        app = FastAPI()
        mount_playground(app, endpoint="/graphql")
        # Access at http://localhost:8000/playground
    """
    path = path.rstrip("/") or "/"
    page = get_playground_html(
        endpoint=endpoint,
        subscription_endpoint=subscription_endpoint,
        headers=headers,
        title=title,
    )

    @app.get(path, response_class=HTMLResponse, include_in_schema=False)
    async def playground_html():
        """GraphiQL playground."""
        return page


__all__ = [
    "get_playground_html",
    "mount_playground",
    "GRAPHIQL_VERSION",
]
