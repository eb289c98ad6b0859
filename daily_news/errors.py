"""Exception hierarchy for the daily news ingestion pipeline."""


class NewsPipelineError(Exception):
    """Base class for all pipeline errors."""


class FetchError(NewsPipelineError):
    """A feed could not be downloaded."""


class MalformedFeedError(NewsPipelineError):
    """The outer feed/channel container of a payload is missing."""


class GenerationError(NewsPipelineError):
    """The generative model call failed."""


class SummarizationError(NewsPipelineError):
    """A summary could not be produced for an item."""


class MatchError(NewsPipelineError):
    """Course matching failed (degraded to no matches by the matcher)."""


class PersistenceError(NewsPipelineError):
    """The backing store rejected or failed an operation."""


class SourceExistsError(PersistenceError):
    """A source with the same key is already registered."""


class SourceNotFoundError(PersistenceError):
    """No source is registered under the given key."""


class JobLockedError(NewsPipelineError):
    """Another run of the same job currently holds the lock."""


class InvalidSourceError(NewsPipelineError):
    """A source definition the fetcher could never poll."""
