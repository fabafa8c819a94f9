# Interwiki map: prefixes such as Wikipedia: in links and the URL
# templates they expand to.  The map is kept in the context's database.
#
# Copyright (c) 2020-2022 Tatu Ylonen.  See file LICENSE and https://ylonen.org

from typing import TYPE_CHECKING, Dict, List, Optional

from sqlalchemy import select

from .db_models import InterwikiRef
from .logging_utils import logger

if TYPE_CHECKING:
    from .core import WikiContext

# Prefix of interwiki keys in a .properties file
INTERWIKI_PROPERTY_PREFIX = "interWikiRef."


def get_interwiki_data(api_url: str) -> List[Dict[str, str]]:
    """Fetches the interwiki map of a MediaWiki site.  ``api_url`` is the
    URL of its api.php.  Returns an empty list if the request fails."""
    import requests

    r = requests.get(
        api_url,
        params={
            "action": "query",
            "meta": "siteinfo",
            "siprop": "interwikimap",
            "format": "json",
            "formatversion": 2,
        },
        headers={"user-agent": "wikimarkup"},
    )
    if r.ok:
        results = r.json()
        return results.get("query", {}).get("interwikimap", [])
    logger.warning("fetching interwiki map from {} failed: {}"
                   .format(api_url, r.status_code))
    return []


def add_interwiki_ref(ctx: "WikiContext", prefix: str, url: str) -> None:
    """Adds or replaces an interwiki prefix.  ``url`` is a template where
    %s is replaced by the page name."""
    from sqlalchemy.dialects.sqlite import insert

    assert isinstance(prefix, str) and prefix
    assert isinstance(url, str)
    stmt = insert(InterwikiRef).values([{"prefix": prefix, "url": url}])
    stmt = stmt.on_conflict_do_update(index_elements=[InterwikiRef.prefix],
                                      set_={"url": url})
    ctx.db_session.execute(stmt)
    ctx.db_session.commit()


def init_interwiki_map(ctx: "WikiContext", api_url: str) -> int:
    """Imports the interwiki map of a MediaWiki site, unless the map already
    has entries.  MediaWiki uses $1 for the page name; it is converted to
    %s.  Returns the number of prefixes added."""
    if get_interwiki_map(ctx):
        return 0
    num = 0
    for result in get_interwiki_data(api_url):
        prefix = result.get("prefix")
        url = result.get("url")
        if not prefix or not url:
            continue
        add_interwiki_ref(ctx, prefix, url.replace("$1", "%s"))
        num += 1
    logger.info("imported {} interwiki prefixes from {}".format(num, api_url))
    return num


def load_interwiki_properties(ctx: "WikiContext",
                              props: Dict[str, str]) -> int:
    """Adds the interWikiRef.<Prefix> entries of a property mapping.
    Returns the number of prefixes added."""
    num = 0
    for k, v in props.items():
        if not k.startswith(INTERWIKI_PROPERTY_PREFIX):
            continue
        prefix = k[len(INTERWIKI_PROPERTY_PREFIX):]
        if prefix and v:
            add_interwiki_ref(ctx, prefix, v)
            num += 1
    return num


def get_interwiki_map(ctx: "WikiContext") -> Dict[str, str]:
    return {ref.prefix: ref.url
            for ref in ctx.db_session.scalars(select(InterwikiRef))}


def get_interwiki_url(ctx: "WikiContext", prefix: str) -> Optional[str]:
    """Returns the URL template for the prefix, or None if it is not
    defined."""
    return ctx.db_session.scalar(select(InterwikiRef.url)
                                 .where(InterwikiRef.prefix == prefix))
