from stockledger.schemas.common import ErrorOut


_ERROR_EXAMPLES: dict[int, tuple[str, str, dict | None]] = {
    400: ("bad_request", "Bad request", None),
    404: ("not_found", "Inventory correction not found", None),
    409: (
        "insufficient_stock",
        "Insufficient stock. Current: 3.0000, Requested: 5.0000, Shortage: 2.0000",
        {"current": "3.0000", "requested": "5.0000", "shortage": "2.0000"},
    ),
    422: ("validation_error", "sale must remove stock; got 5.0000", None),
    500: ("internal_error", "Internal server error", None),
}


def error_responses(*status_codes: int, path: str = "/stock/movements") -> dict[int, dict]:
    """OpenAPI ``responses`` entries that document the shared error envelope."""
    responses: dict[int, dict] = {}
    for status_code in status_codes:
        code, message, details = _ERROR_EXAMPLES.get(status_code, ("http_error", "HTTP error", None))
        responses[status_code] = {
            "model": ErrorOut,
            "description": message,
            "content": {
                "application/json": {
                    "example": {
                        "error": {
                            "code": code,
                            "message": message,
                            "request_id": "request-id",
                            "path": path,
                            "details": details,
                        }
                    }
                }
            },
        }
    return responses
