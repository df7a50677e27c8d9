"""Unit tests for CloudflareClient."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from cloudflare_dynamic_dns.cloudflare import CloudflareClient, Record
from cloudflare_dynamic_dns.errors import ProviderError, RecordNotFoundError, TransportError

RECORDS_URL = "https://api.cloudflare.com/client/v4/zones/zone123/dns_records"


def make_client() -> CloudflareClient:
    return CloudflareClient(
        auth_email="ops@example.com", auth_token="secret", zone_id="zone123", timeout=5
    )


def api_response(result, success: bool = True, errors=None, total_pages: int = 1) -> MagicMock:
    response = MagicMock()
    response.status_code = 200 if success else 400
    response.json.return_value = {
        "success": success,
        "errors": errors or [],
        "messages": [],
        "result": result,
        "result_info": {"page": 1, "total_pages": total_pages},
    }
    return response


def record_json(record_id: str, record_type: str, name: str, content: str, proxied: bool = False):
    return {
        "id": record_id,
        "type": record_type,
        "name": name,
        "content": content,
        "ttl": 1,
        "proxied": proxied,
    }


class TestCloudflareSession:
    """Tests for session setup."""

    def test_auth_headers_are_set(self) -> None:
        """Test the session carries the email/key authentication headers."""
        client = make_client()

        assert client._session.headers["X-Auth-Email"] == "ops@example.com"
        assert client._session.headers["X-Auth-Key"] == "secret"
        assert client._session.headers["Content-Type"] == "application/json"

    def test_records_url(self) -> None:
        """Test the records endpoint is built from the zone ID."""
        assert make_client().records_url == RECORDS_URL


class TestCloudflareListRecords:
    """Tests for list_records."""

    def test_list_records_by_type_and_name(self) -> None:
        """Test a filtered listing sends type, name and pagination parameters."""
        client = make_client()

        with patch.object(client._session, "request") as mock_request:
            mock_request.return_value = api_response(
                [record_json("a1", "A", "web.example.com", "203.0.113.5", proxied=True)]
            )

            records = client.list_records("A", "web.example.com")

            assert records == [
                Record(
                    id="a1", type="A", name="web.example.com", content="203.0.113.5", proxied=True
                )
            ]
            mock_request.assert_called_once_with(
                "GET",
                RECORDS_URL,
                timeout=5,
                params={"type": "A", "page": 1, "per_page": 100, "name": "web.example.com"},
            )

    def test_list_records_follows_pagination(self) -> None:
        """Test every page reported by result_info is fetched."""
        client = make_client()

        with patch.object(client._session, "request") as mock_request:
            mock_request.side_effect = [
                api_response([record_json("t1", "TXT", "a.example.com", "service/default/a")], total_pages=2),
                api_response([record_json("t2", "TXT", "b.example.com", "service/default/b")], total_pages=2),
            ]

            records = client.list_records("TXT")

            assert [r.id for r in records] == ["t1", "t2"]
            assert mock_request.call_count == 2
            pages = [c.kwargs["params"]["page"] for c in mock_request.call_args_list]
            assert pages == [1, 2]
            assert "name" not in mock_request.call_args_list[0].kwargs["params"]

    def test_list_records_unquotes_txt_content(self) -> None:
        """Test quoted TXT content is compared without its quotes."""
        client = make_client()

        with patch.object(client._session, "request") as mock_request:
            mock_request.return_value = api_response(
                [record_json("t1", "TXT", "web.example.com", '"service/default/web"')]
            )

            records = client.list_records("TXT", "web.example.com")

            assert records[0].content == "service/default/web"

    def test_list_records_skips_malformed_entries(self) -> None:
        """Test entries missing required fields are ignored."""
        client = make_client()

        with patch.object(client._session, "request") as mock_request:
            mock_request.return_value = api_response(
                [{"id": "broken"}, record_json("a1", "A", "web.example.com", "203.0.113.5")]
            )

            records = client.list_records("A")

            assert [r.id for r in records] == ["a1"]

    def test_list_records_empty_raises_not_found(self) -> None:
        """Test an empty result is reported as RecordNotFoundError."""
        client = make_client()

        with patch.object(client._session, "request") as mock_request:
            mock_request.return_value = api_response([])

            with pytest.raises(RecordNotFoundError):
                client.list_records("A", "missing.example.com")

    def test_get_record_returns_first_match(self) -> None:
        """Test get_record returns the first listed record."""
        client = make_client()

        with patch.object(client._session, "request") as mock_request:
            mock_request.return_value = api_response(
                [
                    record_json("a1", "A", "web.example.com", "203.0.113.5"),
                    record_json("a2", "A", "web.example.com", "203.0.113.6"),
                ]
            )

            assert client.get_record("A", "web.example.com").id == "a1"


class TestCloudflareErrors:
    """Tests for error mapping."""

    def test_unsuccessful_response_raises_provider_error(self) -> None:
        """Test success=false surfaces the Cloudflare error codes and messages."""
        client = make_client()

        with patch.object(client._session, "request") as mock_request:
            mock_request.return_value = api_response(
                None,
                success=False,
                errors=[{"code": 81057, "message": "Record already exists"}],
            )

            with pytest.raises(ProviderError) as exc_info:
                client.create_record("A", "web.example.com", "203.0.113.5")

            assert exc_info.value.codes == [81057]
            assert exc_info.value.messages == ["Record already exists"]
            assert "Error code 81057, Record already exists." in str(exc_info.value)

    def test_unsuccessful_response_without_errors_uses_fallback(self) -> None:
        """Test a failure with an empty errors array still has a message."""
        client = make_client()

        with patch.object(client._session, "request") as mock_request:
            mock_request.return_value = api_response(None, success=False)

            with pytest.raises(ProviderError) as exc_info:
                client.delete_record_by_id("a1")

            assert "HTTP 400" in str(exc_info.value)
            assert exc_info.value.codes == []

    def test_network_error_raises_transport_error(self) -> None:
        """Test requests exceptions are wrapped in TransportError."""
        client = make_client()

        with patch.object(client._session, "request") as mock_request:
            mock_request.side_effect = requests.exceptions.ConnectionError("Connection refused")

            with pytest.raises(TransportError):
                client.list_records("A")

    def test_non_json_body_raises_transport_error(self) -> None:
        """Test an HTML error page is reported as a transport failure."""
        client = make_client()

        with patch.object(client._session, "request") as mock_request:
            response = MagicMock()
            response.status_code = 502
            response.json.side_effect = ValueError("No JSON")
            mock_request.return_value = response

            with pytest.raises(TransportError) as exc_info:
                client.list_records("A")

            assert "502" in str(exc_info.value)


class TestCloudflareMutations:
    """Tests for create and delete."""

    def test_create_record_posts_payload(self) -> None:
        """Test create_record sends the record as JSON and returns it."""
        client = make_client()

        with patch.object(client._session, "request") as mock_request:
            mock_request.return_value = api_response(
                record_json("t1", "TXT", "web.example.com", "service/default/web")
            )

            record = client.create_record("TXT", "web.example.com", "service/default/web")

            assert record.id == "t1"
            mock_request.assert_called_once_with(
                "POST",
                RECORDS_URL,
                timeout=5,
                json={
                    "type": "TXT",
                    "name": "web.example.com",
                    "content": "service/default/web",
                    "ttl": 1,
                    "proxied": False,
                },
            )

    def test_update_record_puts_payload_to_record_url(self) -> None:
        """Test update_record rewrites the record in place under its ID."""
        client = make_client()

        with patch.object(client._session, "request") as mock_request:
            mock_request.return_value = api_response(
                record_json("a1", "A", "web.example.com", "203.0.113.9", proxied=True)
            )

            record = client.update_record(
                "a1", "A", "web.example.com", "203.0.113.9", proxied=True
            )

            assert record == Record(
                id="a1", type="A", name="web.example.com", content="203.0.113.9", proxied=True
            )
            mock_request.assert_called_once_with(
                "PUT",
                f"{RECORDS_URL}/a1",
                timeout=5,
                json={
                    "type": "A",
                    "name": "web.example.com",
                    "content": "203.0.113.9",
                    "ttl": 1,
                    "proxied": True,
                },
            )

    def test_update_record_failure_raises_provider_error(self) -> None:
        """Test a rejected update surfaces the Cloudflare error."""
        client = make_client()

        with patch.object(client._session, "request") as mock_request:
            mock_request.return_value = api_response(
                None, success=False, errors=[{"code": 81044, "message": "Record does not exist"}]
            )

            with pytest.raises(ProviderError) as exc_info:
                client.update_record("gone", "A", "web.example.com", "203.0.113.9")

            assert exc_info.value.codes == [81044]

    def test_delete_record_by_id(self) -> None:
        """Test delete_record_by_id targets the record URL."""
        client = make_client()

        with patch.object(client._session, "request") as mock_request:
            mock_request.return_value = api_response({"id": "a1"})

            client.delete_record_by_id("a1")

            mock_request.assert_called_once_with("DELETE", f"{RECORDS_URL}/a1", timeout=5)

    def test_delete_record_by_name_looks_up_id(self) -> None:
        """Test delete_record resolves the ID before deleting."""
        client = make_client()

        with patch.object(client._session, "request") as mock_request:
            mock_request.side_effect = [
                api_response([record_json("a1", "A", "web.example.com", "203.0.113.5")]),
                api_response({"id": "a1"}),
            ]

            client.delete_record("A", "web.example.com")

            assert mock_request.call_args_list[1].args == ("DELETE", f"{RECORDS_URL}/a1")

    def test_delete_missing_record_raises_not_found(self) -> None:
        """Test deleting by name fails cleanly when nothing matches."""
        client = make_client()

        with patch.object(client._session, "request") as mock_request:
            mock_request.return_value = api_response([])

            with pytest.raises(RecordNotFoundError):
                client.delete_record("A", "missing.example.com")

            assert mock_request.call_count == 1
