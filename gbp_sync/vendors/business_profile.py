"""Client for the Google Business Profile family of APIs."""

import logging
from datetime import date
from typing import Any, Dict, Iterable, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

logger = logging.getLogger(__name__)

ACCOUNT_MANAGEMENT_URL = "https://mybusinessaccountmanagement.googleapis.com/v1"
BUSINESS_INFO_URL = "https://mybusinessbusinessinformation.googleapis.com/v1"
V4_URL = "https://mybusiness.googleapis.com/v4"
PRODUCT_CATALOG_URL = "https://mybusinessproductcatalog.googleapis.com/v1"
PERFORMANCE_URL = "https://businessprofileperformance.googleapis.com/v1"
REQUEST_TIMEOUT = 15

LOCATION_READ_MASK = (
    "name,title,categories,regularHours,specialHours,moreHours,serviceArea,serviceItems,"
    "labels,latlng,openInfo,metadata,profile,relationshipData,storefrontAddress,websiteUri,phoneNumbers"
)
LISTING_READ_MASK = "name,title,storefrontAddress,phoneNumbers,websiteUri,regularHours,categories,metadata"


def _build_session() -> requests.Session:
    session = requests.Session()
    retries = Retry(
        total=3,
        backoff_factor=1,
        status_forcelist=(500, 502, 503, 504),
        allowed_methods=("GET",),
    )
    session.mount("http://", HTTPAdapter(max_retries=retries))
    session.mount("https://", HTTPAdapter(max_retries=retries))
    return session


_SESSION = _build_session()


class BusinessProfileError(RuntimeError):
    """Raised when a Business Profile endpoint returns a non-2xx or malformed response."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def _date_parts(value: date) -> Dict[str, int]:
    return {"year": value.year, "month": value.month, "day": value.day}


class BusinessProfileClient:
    """Bearer-authenticated access to one connected account's resources."""

    def __init__(self, access_token: str, timeout: float = REQUEST_TIMEOUT, session: Optional[requests.Session] = None) -> None:
        self._access_token = access_token
        self._timeout = timeout
        self._session = session

    def _request(self, method: str, url: str, params: Optional[Dict[str, Any]] = None, json: Any = None) -> Dict[str, Any]:
        session = self._session or _SESSION
        headers = {"Authorization": f"Bearer {self._access_token}"}
        try:
            if method == "GET":
                response = session.get(url, params=params, headers=headers, timeout=self._timeout)
            else:
                response = session.post(url, params=params, json=json, headers=headers, timeout=self._timeout)
        except requests.RequestException as exc:
            raise BusinessProfileError(f"{method} {url} failed: {exc}") from exc

        if not (200 <= response.status_code < 300):
            logger.debug("%s %s returned %s: %s", method, url, response.status_code, (response.text or "")[:300])
            raise BusinessProfileError(f"{method} {url} returned HTTP {response.status_code}", status_code=response.status_code)

        try:
            payload = response.json()
        except ValueError as exc:
            raise BusinessProfileError(f"{method} {url} returned a malformed body", status_code=response.status_code) from exc
        if payload is None:
            return {}
        if not isinstance(payload, dict):
            raise BusinessProfileError(f"{method} {url} returned {type(payload).__name__}, expected an object")
        return payload

    @staticmethod
    def _page_params(page_size: Optional[int], page_token: Optional[str], **extra: Any) -> Dict[str, Any]:
        params: Dict[str, Any] = {key: value for key, value in extra.items() if value is not None}
        if page_size:
            params["pageSize"] = page_size
        if page_token:
            params["pageToken"] = page_token
        return params

    # Accounts and locations

    def list_accounts(self, page_token: Optional[str] = None) -> Dict[str, Any]:
        return self._request("GET", f"{ACCOUNT_MANAGEMENT_URL}/accounts", params=self._page_params(None, page_token))

    def list_locations(self, account_name: str, page_token: Optional[str] = None, page_size: int = 100) -> Dict[str, Any]:
        params = self._page_params(page_size, page_token, readMask=LISTING_READ_MASK)
        return self._request("GET", f"{BUSINESS_INFO_URL}/{account_name}/locations", params=params)

    def get_location(self, location_id: str) -> Dict[str, Any]:
        return self._request("GET", f"{BUSINESS_INFO_URL}/{location_id}", params={"readMask": LOCATION_READ_MASK})

    def get_attributes(self, location_id: str) -> Dict[str, Any]:
        return self._request("GET", f"{BUSINESS_INFO_URL}/{location_id}/attributes")

    # Paginated v4 collections

    def list_reviews(self, parent: str, page_token: Optional[str] = None, page_size: int = 50) -> Dict[str, Any]:
        return self._request("GET", f"{V4_URL}/{parent}/reviews", params=self._page_params(page_size, page_token))

    def list_media(self, parent: str, page_token: Optional[str] = None, page_size: int = 100) -> Dict[str, Any]:
        return self._request("GET", f"{V4_URL}/{parent}/media", params=self._page_params(page_size, page_token))

    def list_local_posts(
        self,
        parent: str,
        page_token: Optional[str] = None,
        page_size: int = 100,
        topic_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        post_filter = f"topicType={topic_type}" if topic_type else None
        params = self._page_params(page_size, page_token, filter=post_filter)
        return self._request("GET", f"{V4_URL}/{parent}/localPosts", params=params)

    def list_questions(self, parent: str, page_token: Optional[str] = None, page_size: int = 50) -> Dict[str, Any]:
        return self._request("GET", f"{V4_URL}/{parent}/questions", params=self._page_params(page_size, page_token))

    def list_products(self, parent: str, page_token: Optional[str] = None, page_size: int = 100) -> Dict[str, Any]:
        return self._request("GET", f"{V4_URL}/{parent}/products", params=self._page_params(page_size, page_token))

    def list_catalog_products(self, parent: str, page_token: Optional[str] = None, page_size: int = 100) -> Dict[str, Any]:
        return self._request("GET", f"{PRODUCT_CATALOG_URL}/{parent}/products", params=self._page_params(page_size, page_token))

    # Services

    def get_service_list_v4(self, parent: str) -> Dict[str, Any]:
        return self._request("GET", f"{V4_URL}/{parent}/serviceList")

    def get_service_list(self, location_id: str) -> Dict[str, Any]:
        return self._request("GET", f"{BUSINESS_INFO_URL}/{location_id}:getServiceList")

    # Performance

    def fetch_multi_daily_metrics(self, location_id: str, metrics: Iterable[str], start: date, end: date) -> Dict[str, Any]:
        body = {
            "dailyMetrics": list(metrics),
            "dailyRange": {"startDate": _date_parts(start), "endDate": _date_parts(end)},
        }
        return self._request("POST", f"{PERFORMANCE_URL}/{location_id}:fetchMultiDailyMetricsTimeSeries", json=body)

    def get_daily_metric(self, location_id: str, metric: str, start: date, end: date) -> Dict[str, Any]:
        params: Dict[str, Any] = {"dailyMetric": metric}
        for prefix, value in (("dailyRange.startDate", start), ("dailyRange.endDate", end)):
            for part, number in _date_parts(value).items():
                params[f"{prefix}.{part}"] = number
        return self._request("GET", f"{PERFORMANCE_URL}/{location_id}:getDailyMetricsTimeSeries", params=params)
