"""
Buyer/farmer messaging

A conversation is keyed by its sorted participant pair and upserted on the
first message. Conversations are listed by last activity.
"""
import logging
from typing import Any, Dict, List

from database import now_utc
from errors import ConversationNotFound, MarketError
from schemas import Conversation, Message
from utils import as_object_id, serialize_doc

logger = logging.getLogger("farmfresh.messaging")


def _participant_summary(db, participant_id: str) -> Dict[str, Any]:
    oid = as_object_id(participant_id)
    user = db["user"].find_one({"_id": oid}) if oid is not None else None
    if user is None:
        user = db["farmer"].find_one({"$or": [{"userId": participant_id}, {"email": participant_id}]})
    if user is None:
        return {"id": participant_id, "name": "Unknown user"}
    return {
        "id": participant_id,
        "name": user.get("name") or user.get("farmName") or user.get("email"),
        "email": user.get("email"),
        "userType": user.get("userType", "farmer" if "farmName" in user else "customer"),
    }


def _conversation_for(db, conversation_id: str, user_id: str) -> dict:
    oid = as_object_id(conversation_id)
    conversation = db["conversation"].find_one({"_id": oid, "participants": user_id}) if oid is not None else None
    if not conversation:
        raise ConversationNotFound()
    return conversation


def send_message(db, sender_id: str, receiver_id: str, content: str) -> Dict[str, Any]:
    if not receiver_id:
        raise MarketError("Receiver ID is required")
    if receiver_id == sender_id:
        raise MarketError("Cannot send a message to yourself")
    if not (content or "").strip():
        raise MarketError("Message content is required")

    participants = sorted([sender_id, receiver_id])
    now = now_utc()
    fresh = Conversation(participants=participants, lastMessageAt=now).model_dump(exclude={"participants"})
    fresh["createdAt"] = now
    db["conversation"].update_one({"participants": participants}, {"$setOnInsert": fresh}, upsert=True)
    conversation = db["conversation"].find_one({"participants": participants})

    message = Message(
        conversationId=str(conversation["_id"]),
        senderId=sender_id,
        receiverId=receiver_id,
        content=content.strip(),
    ).model_dump()
    message["createdAt"] = message["updatedAt"] = now
    message_id = db["message"].insert_one(message).inserted_id

    db["conversation"].update_one(
        {"_id": conversation["_id"]},
        {"$set": {"lastMessage": message["content"], "lastMessageAt": now, "lastMessageSender": sender_id}},
    )
    logger.info("message_sent conversation_id=%s sender_id=%s", conversation["_id"], sender_id)

    message["_id"] = message_id
    return {"conversationId": str(conversation["_id"]), "message": serialize_doc(message)}


def list_conversations(db, user_id: str) -> List[Dict[str, Any]]:
    conversations = []
    for conv in db["conversation"].find({"participants": user_id}).sort("lastMessageAt", -1):
        other = next((p for p in conv.get("participants", []) if p != user_id), None)
        summary = serialize_doc(conv)
        summary["otherParticipant"] = _participant_summary(db, other) if other else None
        summary["unreadCount"] = db["message"].count_documents({
            "conversationId": str(conv["_id"]),
            "receiverId": user_id,
            "isRead": False,
        })
        conversations.append(summary)
    return conversations


def get_messages(db, conversation_id: str, user_id: str, limit: int = 100) -> Dict[str, Any]:
    conversation = _conversation_for(db, conversation_id, user_id)
    cursor = db["message"].find({"conversationId": str(conversation["_id"])}).sort("createdAt", -1).limit(limit)
    messages = [serialize_doc(m) for m in cursor]
    messages.reverse()
    return {"conversation": serialize_doc(conversation), "messages": messages}


def mark_read(db, conversation_id: str, user_id: str) -> int:
    conversation = _conversation_for(db, conversation_id, user_id)
    result = db["message"].update_many(
        {"conversationId": str(conversation["_id"]), "receiverId": user_id, "isRead": False},
        {"$set": {"isRead": True, "readAt": now_utc()}},
    )
    return result.modified_count
