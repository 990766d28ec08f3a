class MessagingError(Exception):
    """Base class for messaging failures."""


class MessageStoreError(MessagingError):
    """The message store rejected or failed a call."""


class AuthenticationRequiredError(MessagingError):
    """The caller has no identity, or is not allowed to message this listing."""


class ListingNotFoundError(MessageStoreError):
    """The listing a message refers to does not exist."""


class StoreUnavailableError(MessageStoreError):
    """The backing database could not be reached."""
