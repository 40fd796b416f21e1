import logging
import re
import time

import requests
from bs4 import BeautifulSoup
from django.conf import settings

from ..constants import ATCODER, CODECHEF, CODEFORCES, CODOLIO, GITHUB, LEETCODE, PLATFORMS
from ..exceptions import (
    AccessForbidden,
    FetchError,
    FetchTimeout,
    NetworkError,
    PlatformAPIError,
    RateLimited,
    ServiceUnavailable,
    UserNotFound,
)
from .metrics import Metrics
from .scoring import round_half_up

logger = logging.getLogger(__name__)

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


def _to_int(value, default=0):
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


class PlatformClient:
    """
    Base for one platform. Subclasses implement ``fetch(identifier)`` and
    return a ``Metrics`` or raise a ``FetchError`` subclass.
    """

    platform = ""
    label = ""
    base_url = ""
    rate_limit = 1
    timeout = 10
    max_attempts = 1
    base_delay = 1.0
    supported = True

    # HTTP status -> (error class, message template)
    status_errors = {}
    timeout_message = "{label} request timed out"

    def __init__(self, user_agent=None):
        self.user_agent = user_agent or getattr(settings, "PLATFORM_USER_AGENT", "Skorly-Platform-Tracker/1.0")

    def __repr__(self):
        return f"<{self.__class__.__name__} {self.platform}>"

    def fetch(self, identifier) -> Metrics:
        raise NotImplementedError

    def _error(self, error_class, message):
        return error_class(message, platform=self.platform)

    def error_for_status(self, status_code, identifier):
        if status_code in self.status_errors:
            error_class, template = self.status_errors[status_code]
            return self._error(error_class, template.format(label=self.label, identifier=identifier))
        if status_code == 429:
            return self._error(RateLimited, f"{self.label} rate limit exceeded")
        if status_code >= 500:
            return self._error(ServiceUnavailable, f"{self.label} responded with HTTP {status_code}")
        return self._error(PlatformAPIError, f"{self.label} responded with HTTP {status_code}")

    def _send(self, send, url, identifier, headers=None, **kwargs):
        request_headers = {"User-Agent": self.user_agent}
        request_headers.update(headers or {})
        try:
            response = send(url, headers=request_headers, timeout=self.timeout, **kwargs)
        except requests.Timeout as exc:
            raise self._error(FetchTimeout, self.timeout_message.format(label=self.label)) from exc
        except requests.RequestException as exc:
            raise self._error(NetworkError, f"{self.label} connection error: {exc}") from exc

        if response.status_code >= 400:
            raise self.error_for_status(response.status_code, identifier)
        return response

    def _get(self, url, identifier, **kwargs):
        return self._send(requests.get, url, identifier, **kwargs)

    def _post(self, url, identifier, **kwargs):
        return self._send(requests.post, url, identifier, **kwargs)

    def _json(self, response):
        try:
            return response.json()
        except ValueError as exc:
            raise self._error(PlatformAPIError, f"{self.label} returned invalid JSON") from exc


class CodeforcesClient(PlatformClient):
    platform = CODEFORCES
    label = "Codeforces"
    base_url = "https://codeforces.com/api"
    rate_limit = 5
    timeout = 10
    max_attempts = 3
    base_delay = 2.0
    status_errors = {
        400: (UserNotFound, "Invalid Codeforces handle: {identifier}"),
        503: (ServiceUnavailable, "Codeforces API temporarily unavailable"),
    }

    def _call(self, method, handle, **params):
        response = self._get(f"{self.base_url}/{method}", handle, params=params)
        data = self._json(response)
        if data.get("status") != "OK":
            comment = data.get("comment", "") or ""
            if "not found" in comment.lower():
                raise self._error(UserNotFound, f"Invalid Codeforces handle: {handle}")
            if "limit" in comment.lower():
                raise self._error(RateLimited, f"Codeforces call limit exceeded: {comment}")
            raise self._error(PlatformAPIError, f"Codeforces API error: {comment}")
        return data.get("result") or []

    def fetch(self, handle):
        result = self._call("user.info", handle, handles=handle)
        if not result:
            raise self._error(UserNotFound, f"Invalid Codeforces handle: {handle}")
        info = result[0]

        submissions = self._call("user.status", handle, handle=handle, **{"from": 1, "count": 10000})
        solved = set()
        for sub in submissions:
            if sub.get("verdict") != "OK":
                continue
            problem = sub.get("problem", {})
            solved.add((problem.get("contestId"), problem.get("index")))

        rating_changes = self._call("user.rating", handle, handle=handle)

        rating = _to_int(info.get("rating"))
        return Metrics(
            rating=rating,
            max_rating=_to_int(info.get("maxRating"), rating),
            problems_solved=len(solved),
            contests_participated=len(rating_changes),
            # Codeforces exposes a rank title, not a numeric position.
            rank=None,
            additional_data={
                "handle": info.get("handle", handle),
                "rankTitle": info.get("rank"),
                "maxRankTitle": info.get("maxRank"),
                "contribution": info.get("contribution", 0),
                "country": info.get("country"),
                "city": info.get("city"),
                "organization": info.get("organization"),
                "titlePhoto": info.get("titlePhoto"),
            },
        )


LEETCODE_PROFILE_QUERY = """
query getUserProfile($username: String!) {
  matchedUser(username: $username) {
    username
    profile {
      ranking
      realName
      school
      countryName
      company
      reputation
    }
    submitStats {
      acSubmissionNum {
        difficulty
        count
        submissions
      }
    }
    badges {
      id
      displayName
    }
  }
  userContestRanking(username: $username) {
    attendedContestsCount
    rating
    globalRanking
    totalParticipants
    topPercentage
  }
}
"""


class LeetCodeClient(PlatformClient):
    platform = LEETCODE
    label = "LeetCode"
    base_url = "https://leetcode.com/graphql"
    rate_limit = 2
    timeout = 15
    max_attempts = 3
    base_delay = 3.0
    status_errors = {
        403: (AccessForbidden, "LeetCode API access forbidden"),
        429: (RateLimited, "LeetCode API rate limit exceeded"),
    }

    def fetch(self, username):
        response = self._post(
            self.base_url,
            username,
            json={"query": LEETCODE_PROFILE_QUERY, "variables": {"username": username}},
            headers={"Content-Type": "application/json", "Referer": "https://leetcode.com"},
        )
        data = self._json(response).get("data") or {}
        user = data.get("matchedUser")
        if not user:
            raise self._error(UserNotFound, f"LeetCode user not found: {username}")

        contest = data.get("userContestRanking") or {}
        buckets = (user.get("submitStats") or {}).get("acSubmissionNum") or []
        # "All" is the sum of the other buckets.
        solved = sum(_to_int(b.get("count")) for b in buckets if b.get("difficulty") != "All")

        rating = round_half_up(contest.get("rating") or 0)
        profile = user.get("profile") or {}
        return Metrics(
            rating=rating,
            max_rating=rating,
            problems_solved=solved,
            contests_participated=_to_int(contest.get("attendedContestsCount")),
            rank=contest.get("globalRanking") or None,
            additional_data={
                "username": user.get("username", username),
                "ranking": profile.get("ranking"),
                "reputation": profile.get("reputation") or 0,
                "badges": len(user.get("badges") or []),
                "company": profile.get("company"),
                "school": profile.get("school"),
                "topPercentage": contest.get("topPercentage"),
            },
        )


def _int_in(elements, nonzero=False):
    for element in elements:
        match = re.search(r"(\d+)", element.get_text(" ", strip=True))
        if not match:
            continue
        value = int(match.group(1))
        if nonzero and value == 0:
            continue
        return value
    return None


def _rating_number(soup):
    return _int_in(soup.select(".rating-number")[:1])


def _problems_solved_block(soup):
    return _int_in(soup.select(".problems-solved h3"), nonzero=True)


def _rating_data_section(soup):
    return _int_in(soup.select("section.rating-data-section h3")[:1], nonzero=True)


def _contest_count(soup):
    return _int_in(soup.select(".contest-participated-count b"))


def _global_rank(soup):
    first = soup.select_one(".rating-ranks li")
    if first is None:
        return None
    return _int_in(first.find_all("a")[:1])


def _text_of(selector):
    def strategy(soup):
        element = soup.select_one(selector)
        text = element.get_text(" ", strip=True) if element else ""
        return text or None
    return strategy


class CodeChefClient(PlatformClient):
    platform = CODECHEF
    label = "CodeChef"
    base_url = "https://www.codechef.com"
    rate_limit = 1
    timeout = 12
    max_attempts = 2
    base_delay = 5.0
    status_errors = {
        404: (UserNotFound, "CodeChef user not found: {identifier}"),
    }
    timeout_message = "CodeChef request timeout - site may be slow"

    # Ordered extraction strategies per field; the first hit wins.
    FIELD_STRATEGIES = {
        "rating": [_rating_number],
        "problems_solved": [_problems_solved_block, _rating_data_section],
        "contests_participated": [_contest_count],
    }
    HIGHEST_RATING_RE = re.compile(r"Highest Rating\s*(\d+)")

    def __init__(self, user_agent=None):
        super().__init__(user_agent=BROWSER_USER_AGENT)

    @staticmethod
    def _extract(soup, strategies):
        for strategy in strategies:
            value = strategy(soup)
            if value is not None:
                return value
        return None

    def parse_profile(self, html, username) -> Metrics:
        soup = BeautifulSoup(html, "html.parser")
        metrics = Metrics(additional_data={"username": username})

        missing = []
        for field, strategies in self.FIELD_STRATEGIES.items():
            value = self._extract(soup, strategies)
            if value is None:
                missing.append(field)
                metrics.warnings.append(f"CodeChef {field} not found on profile page")
                value = 0
            setattr(metrics, field, value)

        header = soup.select_one(".rating-header")
        match = self.HIGHEST_RATING_RE.search(header.get_text(" ", strip=True)) if header else None
        metrics.max_rating = int(match.group(1)) if match else metrics.rating
        metrics.rank = _global_rank(soup)
        metrics.additional_data["country"] = _text_of(".user-country-name")(soup)
        metrics.additional_data["institution"] = _text_of(".user-institution")(soup)

        if len(missing) == len(self.FIELD_STRATEGIES):
            metrics.partial = True
        if missing:
            logger.warning("CodeChef selectors missed for %s: %s", username, ", ".join(missing))
        return metrics

    def fetch(self, username):
        response = self._get(
            f"{self.base_url}/users/{username}",
            username,
            headers={
                "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                "Accept-Language": "en-US,en;q=0.5",
            },
        )
        try:
            return self.parse_profile(response.text, username)
        except FetchError:
            raise
        except Exception as exc:
            raise self._error(PlatformAPIError, f"CodeChef scraping error: {exc}") from exc


class GitHubClient(PlatformClient):
    platform = GITHUB
    label = "GitHub"
    base_url = "https://api.github.com"
    rate_limit = 10
    timeout = 10
    max_attempts = 3
    base_delay = 2.0
    status_errors = {
        404: (UserNotFound, "GitHub user not found: {identifier}"),
        403: (RateLimited, "GitHub API rate limit exceeded"),
    }

    def __init__(self, user_agent=None, token=None):
        super().__init__(user_agent=user_agent)
        self.token = token if token is not None else getattr(settings, "GITHUB_TOKEN", "")

    def _headers(self):
        headers = {"Accept": "application/vnd.github.v3+json"}
        if self.token:
            headers["Authorization"] = f"token {self.token}"
        return headers

    def fetch(self, username):
        user = self._json(self._get(f"{self.base_url}/users/{username}", username, headers=self._headers()))
        repos = self._json(self._get(
            f"{self.base_url}/users/{username}/repos",
            username,
            headers=self._headers(),
            params={"type": "owner", "sort": "updated", "per_page": 100},
        ))

        total_stars = sum(_to_int(repo.get("stargazers_count")) for repo in repos)
        total_forks = sum(_to_int(repo.get("forks_count")) for repo in repos)
        return Metrics(
            rating=total_stars,
            max_rating=total_stars,
            problems_solved=_to_int(user.get("public_repos")),
            contests_participated=0,
            rank=None,
            additional_data={
                "username": user.get("login", username),
                "name": user.get("name"),
                "company": user.get("company"),
                "location": user.get("location"),
                "publicRepos": user.get("public_repos", 0),
                "publicGists": user.get("public_gists", 0),
                "followers": user.get("followers", 0),
                "following": user.get("following", 0),
                "totalStars": total_stars,
                "totalForks": total_forks,
                "createdAt": user.get("created_at"),
            },
        )


class UnsupportedPlatformClient(PlatformClient):
    """Platform with no data source; the pipeline records it as unsupported."""

    supported = False
    max_attempts = 1
    base_delay = 3.0

    def __init__(self, platform, label, base_url, rate_limit, user_agent=None):
        super().__init__(user_agent=user_agent)
        self.platform = platform
        self.label = label
        self.base_url = base_url
        self.rate_limit = rate_limit

    def fetch(self, identifier):
        return Metrics.zero(username=identifier)


def build_clients(user_agent=None, github_token=None) -> dict:
    """The closed set of platform clients, keyed by platform name."""
    clients = {
        CODEFORCES: CodeforcesClient(user_agent=user_agent),
        LEETCODE: LeetCodeClient(user_agent=user_agent),
        CODECHEF: CodeChefClient(),
        ATCODER: UnsupportedPlatformClient(ATCODER, "AtCoder", "https://atcoder.jp", 2, user_agent=user_agent),
        CODOLIO: UnsupportedPlatformClient(CODOLIO, "Codolio", "https://codolio.com", 3, user_agent=user_agent),
        GITHUB: GitHubClient(user_agent=user_agent, token=github_token),
    }
    return {platform: clients[platform] for platform in PLATFORMS}


CONNECTIVITY_HANDLES = {
    CODEFORCES: "tourist",
    LEETCODE: "LeetCode",
    CODECHEF: "admin",
    GITHUB: "octocat",
}


def check_platform_connectivity(clients=None) -> dict:
    """Fetch one well-known public profile per supported platform."""
    clients = clients or build_clients()
    results = {}
    for platform, client in clients.items():
        handle = CONNECTIVITY_HANDLES.get(platform)
        if not client.supported or not handle:
            results[platform] = {"status": "skipped", "reason": "No data source for this platform"}
            continue
        started = time.monotonic()
        try:
            client.fetch(handle)
        except FetchError as exc:
            logger.warning("Connectivity check failed for %s: %s", platform, exc)
            results[platform] = {"status": "failed", "kind": exc.kind, "error": str(exc)}
            continue
        results[platform] = {
            "status": "success",
            "response_ms": int((time.monotonic() - started) * 1000),
        }
    return results
