"""HTTP client for JSON POSTs with timeouts and bounded retries."""
import time
import logging
import requests

logger = logging.getLogger("telemon.http")


class APIError(Exception):
    """HTTP request error with status code and response body."""
    def __init__(self, message, status_code=None, response_body=None, source=None):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body
        self.source = source


class HTTPClient:
    """JSON-over-HTTP client used by the telemetry sink and alert channels.

    Any non-2xx answer raises APIError. Retryable statuses and connection
    errors are retried up to ``max_retries`` times; the default of zero leaves
    retry policy to the caller (the delivery queue has its own backoff).
    """

    RETRYABLE_STATUS = {429, 500, 502, 503, 504}

    def __init__(self, base_url="", timeout=10, max_retries=0, headers=None, session=None):
        self.base_url = (base_url or "").rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": "telemon/1.0", "Content-Type": "application/json"})
        if headers:
            self.session.headers.update(headers)

    def url_for(self, path=""):
        if path.startswith("http://") or path.startswith("https://"):
            return path
        if not path:
            return self.base_url
        return f"{self.base_url}/{path.lstrip('/')}"

    def post_json(self, path, payload, headers=None):
        """POST a JSON payload. Returns the decoded body (or text)."""
        return self._request("POST", path, payload, headers)

    def _request(self, method, path, payload=None, headers=None):
        url = self.url_for(path)
        last_error = None

        for attempt in range(self.max_retries + 1):
            try:
                start = time.time()
                resp = self.session.request(method, url, json=payload, headers=headers, timeout=self.timeout)
                latency = int((time.time() - start) * 1000)
                logger.debug(f"{method} {url} → {resp.status_code} ({latency}ms)")

                if 200 <= resp.status_code < 300:
                    try:
                        return resp.json()
                    except ValueError:
                        return resp.text

                error = APIError(
                    f"HTTP {resp.status_code} from {url}",
                    status_code=resp.status_code,
                    response_body=resp.text,
                    source=url,
                )
                if resp.status_code not in self.RETRYABLE_STATUS:
                    raise error

                last_error = error
                if attempt < self.max_retries:
                    retry_after = resp.headers.get("Retry-After")
                    wait = float(retry_after) if retry_after else min(2 ** attempt, 30)
                    logger.warning(f"Retryable {resp.status_code} from {url}, waiting {wait:.1f}s (attempt {attempt + 1})")
                    time.sleep(wait)

            except requests.exceptions.RequestException as e:
                logger.warning(f"Request error for {url}: {e} (attempt {attempt + 1})")
                last_error = APIError(f"Request to {url} failed: {e}", source=url)
                if attempt < self.max_retries:
                    time.sleep(min(2 ** attempt, 30))

        raise last_error or APIError(f"Max retries exceeded for {url}", source=url)
