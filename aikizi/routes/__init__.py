# aikizi/routes/__init__.py
from flask import request

from aikizi.errors import InvalidInput


def json_body() -> dict:
    """Cuerpo JSON como dict; vacío si no hay cuerpo, InvalidInput si no es un objeto."""
    body = request.get_json(silent=True)
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise InvalidInput("Request body must be a JSON object")
    return body
