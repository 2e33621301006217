"""
API Gateway (Lambda proxy integration) handler for the WebAuthn gateway.
Both the REST API (v1) and HTTP API (v2) event shapes are accepted.
"""

import base64
import json
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlencode

from flask import Flask

from webauthn_gateway.app import app as default_app


def _query_pairs(event: Mapping[str, Any]) -> List[Tuple[str, str]]:
    """Flatten the event's query parameters into ``(name, value)`` pairs."""
    multi = event.get('multiValueQueryStringParameters') or {}
    if multi:
        return [(key, value) for key, values in multi.items() for value in values or []]
    single = event.get('queryStringParameters') or {}
    return [(key, value) for key, value in single.items() if value is not None]


def _request_line(event: Mapping[str, Any]) -> Tuple[str, str, str]:
    """Return method, path and encoded query string for either event version."""
    http_context = (event.get('requestContext') or {}).get('http') or {}
    if 'rawPath' in event:
        method = http_context.get('method', 'GET')
        path = event.get('rawPath') or '/'
        query = event.get('rawQueryString') or ''
    else:
        method = event.get('httpMethod', 'GET')
        path = event.get('path') or '/'
        query = urlencode(_query_pairs(event))
    return method.upper(), path, query


def _request_body(event: Mapping[str, Any]) -> bytes:
    body = event.get('body') or ''
    if event.get('isBase64Encoded'):
        return base64.b64decode(body)
    return body.encode('utf-8')


def _error(status: int, message: str) -> Dict[str, Any]:
    return {
        'statusCode': status,
        'headers': {'Content-Type': 'application/json'},
        'body': json.dumps({'error': message}),
        'isBase64Encoded': False,
    }


def handler(event: Mapping[str, Any], context: Any = None, app: Optional[Flask] = None) -> Dict[str, Any]:
    """Translate one gateway event into a Flask request and back."""
    app = app or default_app
    try:
        method, path, query = _request_line(event)
        headers = dict(event.get('headers') or {})
        body = _request_body(event)
    except (AttributeError, TypeError, ValueError) as exc:
        app.logger.warning("Malformed gateway event: %s", exc)
        return _error(400, 'malformed gateway event')

    try:
        with app.test_request_context(path, method=method, query_string=query, headers=headers, data=body):
            response = app.full_dispatch_request()
            return {
                'statusCode': response.status_code,
                'headers': dict(response.headers),
                'body': response.get_data(as_text=True),
                'isBase64Encoded': False,
            }
    except Exception:
        app.logger.exception("Unhandled error while processing %s %s", method, path)
        return _error(500, 'internal server error')


# Lambda resolves ``api.handler.lambda_handler`` by default naming convention.
lambda_handler = handler

__all__ = ['handler', 'lambda_handler']
