class NewsAggError(Exception):
    """Base class for pipeline errors."""


class FeedFetchError(NewsAggError):
    """A feed document could not be fetched or parsed as a whole."""

    def __init__(self, feed_url: str, message: str):
        self.feed_url = feed_url
        super().__init__(f"Failed to fetch feed {feed_url}: {message}")


class BrokerError(NewsAggError):
    """The message broker refused or could not route a message."""


class MessageDecodeError(NewsAggError):
    """A message body could not be turned into a task envelope."""


class EmailDeliveryError(NewsAggError):
    """The SMTP server rejected or never received a message."""
