import json
from urllib import error, request


class EmailDeliveryError(Exception):
    pass


class EmailClient:
    """Sends HTML mail through an SES v2 compatible ``outbound-emails`` endpoint.

    Requests are not SigV4 signed; ``api_url`` must be a signing proxy or a
    provider that accepts the bearer ``api_key``.
    """

    def __init__(
        self,
        *,
        api_url: str,
        from_address: str,
        api_key: str = "",
        timeout_seconds: float = 10.0,
    ) -> None:
        self.api_url = api_url.strip()
        self.from_address = from_address
        self.api_key = api_key.strip()
        self.timeout_seconds = timeout_seconds

    def send_email(self, *, to_address: str, subject: str, html_body: str) -> None:
        if not self.api_url:
            raise EmailDeliveryError("Email API is not configured.")

        payload = {
            "Content": {
                "Simple": {
                    "Subject": {"Data": subject},
                    "Body": {"Html": {"Data": html_body}},
                },
            },
            "Destination": {"ToAddresses": [to_address]},
            "FromEmailAddress": self.from_address,
        }
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        req = request.Request(
            self.api_url,
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers=headers,
        )
        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                response.read()
        except TimeoutError as exc:
            raise EmailDeliveryError("Email API request timed out.") from exc
        except error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="ignore")
            raise EmailDeliveryError(f"Email API HTTP {exc.code}: {body or 'empty response body'}") from exc
        except error.URLError as exc:
            raise EmailDeliveryError(f"Email API connection error: {exc.reason}") from exc
