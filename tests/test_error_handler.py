"""Error catalog tests"""

from utils.error_handler import ERROR_CATALOG, ErrorCategory, ErrorCode, build_error, http_status_for


class TestErrorCatalog:

    def test_every_code_is_catalogued(self):
        assert set(ERROR_CATALOG) == set(ErrorCode)

    def test_build_error_payload(self):
        payload = build_error(ErrorCode.INSUFFICIENT_FUNDS, {"current_balance": 3}).to_dict()

        assert payload["success"] is False
        assert payload["error"]["code"] == "INSUFFICIENT_FUNDS"
        assert payload["error"]["category"] == ErrorCategory.BUSINESS_LOGIC.value
        assert payload["error"]["details"] == {"current_balance": 3}
        assert payload["error"]["timestamp"]

    def test_http_status_mapping(self):
        assert http_status_for(ErrorCode.ACTIVITY_NOT_FOUND) == 404
        assert http_status_for(ErrorCode.NOT_AUTHORIZED) == 403
        assert http_status_for(ErrorCode.TEAM_FULL) == 409
