import logging

logger = logging.getLogger("wikimarkup")
