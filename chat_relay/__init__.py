from .database import MessageLog, StorageError, StoredMessage
from .server import BroadcastHandler, ConnectionStatus, Message, ValidationError
from .tables import OnlineUser, PresenceRegistry, RegistryChange
