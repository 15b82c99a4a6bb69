from typing import Any, Dict, List, Optional

import requests


class CherryPickerError(Exception):
    """
    CherryPickerError that can be raised in case of errors.
    """


class PlatformApiError(CherryPickerError):
    """
    Raised when a GitHub API call fails or cannot be sent.
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class GitHubAPI:
    """
    Wrapper for GitHub API calls to make them mockable.
    """

    timeout: int = 10
    per_page: int = 100

    def __init__(self, base_url: str, headers: Dict[str, str]):
        self.base_url = base_url
        self.headers = headers

    def _make_request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict] = None,
        params: Optional[Dict] = None,
    ) -> requests.Response:
        url = endpoint if endpoint.startswith("https://") else f"{self.base_url}/{endpoint}"
        try:
            response = requests.request(
                method,
                url,
                json=data,
                params=params,
                headers=self.headers,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise PlatformApiError(f"{method} {endpoint}: {e}") from e

        try:
            response.raise_for_status()
        except requests.HTTPError as e:
            raise PlatformApiError(
                f"HTTP Error: {response.status_code} - {response.reason} ({method} {endpoint})",
                status_code=response.status_code,
            ) from e
        return response

    def get(self, endpoint: str, params: Optional[Dict] = None) -> requests.Response:
        return self._make_request("GET", endpoint, params=params)

    def post(self, endpoint: str, data: Dict) -> requests.Response:
        return self._make_request("POST", endpoint, data)

    def get_all(self, endpoint: str, params: Optional[Dict] = None) -> List[Any]:
        """
        Fetches every page of a list endpoint by following the Link headers.
        """
        items: List[Any] = []
        next_endpoint: Optional[str] = endpoint
        next_params: Optional[Dict] = {"per_page": self.per_page, **(params or {})}
        while next_endpoint:
            response = self.get(next_endpoint, next_params)
            items.extend(response.json())
            next_endpoint = response.links.get("next", {}).get("url")
            # the next url already carries the query string
            next_params = None
        return items

    def exists(self, endpoint: str) -> bool:
        """
        Returns True for a 2xx answer and False for a 404, for the boolean
        "check" endpoints (membership, collaborators).
        """
        try:
            self.get(endpoint)
        except PlatformApiError as e:
            if e.status_code == 404:
                return False
            raise
        return True

    def download(self, endpoint: str, path: str, accept: Optional[str] = None) -> str:
        """
        Streams the content at endpoint into path, asking for the accept media
        type when given (e.g. the patch of a pull request).
        """
        url = endpoint if endpoint.startswith("https://") else f"{self.base_url}/{endpoint}"
        headers = dict(self.headers)
        if accept:
            headers["Accept"] = accept
        try:
            with requests.get(
                url, headers=headers, timeout=self.timeout, stream=True
            ) as response:
                response.raise_for_status()
                with open(path, "wb") as fp:
                    for chunk in response.iter_content(chunk_size=65536):
                        fp.write(chunk)
        except requests.HTTPError as e:
            raise PlatformApiError(
                f"HTTP Error: {e.response.status_code} while downloading {url}",
                status_code=e.response.status_code,
            ) from e
        except requests.RequestException as e:
            raise PlatformApiError(f"Unable to download {url}: {e}") from e
        return path
