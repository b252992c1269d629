class RepositoryError(Exception):
    """Base for failures raised by the pipeline's storage layer."""


class RepositoryUnavailableError(RepositoryError):
    """The configured backend cannot be reached, or Postgres was selected without a URL."""


class RepositoryNotFoundError(RepositoryError):
    """No topic, article, queue item, story or duplicate candidate has the given id."""


class RepositoryConflictError(RepositoryError):
    """The entity is in a status that does not allow the requested transition."""


class RepositoryForbiddenError(RepositoryError):
    """The actor does not hold the entity, e.g. a worker submitting another worker's claim."""


class RepositoryValidationError(RepositoryError):
    """Input was rejected before anything was written."""
