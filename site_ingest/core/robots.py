"""Robots.txt fetching and evaluation."""
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit

import httpx

from site_ingest.config import settings
from site_ingest.core.errors import BlockedHostError

logger = logging.getLogger(__name__)

ROBOTS_MAX_BYTES = 512 * 1024


@dataclass
class RobotsGroup:
    agents: List[str] = field(default_factory=list)
    rules: List[Tuple[bool, str]] = field(default_factory=list) # (allow, path prefix)


def parse_robots_txt(robots_txt: str) -> List[RobotsGroup]:
    """
    Split robots.txt into groups. Consecutive User-agent lines share one
    group; empty Allow/Disallow values are ignored.
    """
    groups: List[RobotsGroup] = []
    current: Optional[RobotsGroup] = None

    for raw_line in robots_txt.splitlines():
        line = raw_line.split("#", 1)[0].strip()
        if not line or ":" not in line:
            continue
        directive, value = line.split(":", 1)
        directive = directive.strip().lower()
        value = value.strip()

        if directive == "user-agent":
            if current is not None and not current.rules:
                current.agents.append(value.lower())
            else:
                current = RobotsGroup(agents=[value.lower()])
                groups.append(current)
        elif directive in ("allow", "disallow") and current is not None and value:
            current.rules.append((directive == "allow", value))

    return groups


def is_path_allowed(robots_txt: str, path: str, agent: str) -> bool:
    """
    Evaluate ``path`` for ``agent``. A group naming the agent takes precedence
    over the ``*`` group; within the group the longest matching rule wins and
    Allow wins a tie. No matching rule means allowed.
    """
    agent = agent.lower()
    groups = parse_robots_txt(robots_txt)

    selected = [g for g in groups if agent in g.agents]
    if not selected:
        selected = [g for g in groups if "*" in g.agents]
    if not selected:
        return True

    best_length = -1
    allowed = True
    for group in selected:
        for allow, prefix in group.rules:
            if not path.startswith(prefix):
                continue
            if len(prefix) > best_length or (len(prefix) == best_length and allow):
                best_length = len(prefix)
                allowed = allow
    return allowed


def robots_url_for(url: str) -> str:
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, "/robots.txt", "", ""))


async def check_robots_txt(
    client: httpx.AsyncClient,
    root_url: str,
    path: Optional[str] = None,
    agent: str = settings.CRAWL_ROBOTS_AGENT,
) -> bool:
    """
    Fetch robots.txt for the site of ``root_url`` and decide whether ``path``
    may be crawled. Redirects are not followed. Missing files, error statuses
    and network failures all allow crawling.
    """
    robots_url = robots_url_for(root_url)
    if path is None:
        path = urlsplit(root_url).path or "/"

    try:
        async with client.stream("GET", robots_url, follow_redirects=False) as response:
            if response.status_code == 404 or response.is_redirect or not response.is_success:
                logger.debug(f"No usable robots.txt at {robots_url} (HTTP {response.status_code})")
                return True

            body = bytearray()
            async for chunk in response.aiter_bytes():
                body.extend(chunk)
                if len(body) > ROBOTS_MAX_BYTES:
                    break
            text = bytes(body[:ROBOTS_MAX_BYTES]).decode(response.encoding or "utf-8", errors="replace")
    except (httpx.HTTPError, BlockedHostError) as e:
        logger.info(f"Could not fetch {robots_url}: {e}. Allowing crawl.")
        return True

    allowed = is_path_allowed(text, path, agent)
    if not allowed:
        logger.info(f"robots.txt at {robots_url} disallows {path} for {agent}")
    return allowed
