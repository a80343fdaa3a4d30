# Event names as they appear in the "type" field of a frame


class ClientEventType:
    REGISTER = "newUser"
    SEND_MESSAGE = "sendMessage"


class ServerEventType:
    ROSTER_UPDATE = "usersOnline"
    MESSAGE_BROADCAST = "newMessage"


SERVER_ID = "server"
BROADCAST_TARGET = "*"

SYSTEM_SENDER_ID = "system"
SEND_FAILED_TEXT = "Error sending message. Please try again."
