from relay_core.client.conversation_client import AUTO_MODEL, ConversationClient, StreamHandle

__all__ = ["AUTO_MODEL", "ConversationClient", "StreamHandle"]
