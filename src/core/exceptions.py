class ConversationSyncError(Exception):
    pass


class StoreUnavailableError(ConversationSyncError):
    pass


class PublishError(ConversationSyncError):
    pass


class PushStreamError(ConversationSyncError):
    pass


class BroadcastUnavailableError(ConversationSyncError):
    pass


class ProgressionError(ConversationSyncError):
    pass


class ScriptError(ConversationSyncError):
    pass


class ConfigurationError(ConversationSyncError):
    pass
