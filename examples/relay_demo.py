"""Minimal demonstration of the Relay conversation client."""

from relay_core.api.service import list_conversations, send_message

if __name__ == "__main__":
    question = "用三句话解释什么是 single-flight"
    reply = send_message(question)
    print("User:", question)
    print("Assistant:", reply["reply"])
    print("Conversation:", reply["conversation_id"])
    for item in list_conversations(limit=5)["items"]:
        print("-", item["title"] or item["id"])
