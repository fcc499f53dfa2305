from typing import List

from lumen.domain.models.agent_state import InboundMessage

POST_TOOL_QUERY = "Process and respond based on the tool execution results in context"

CONTINUATION_QUERY = (
    "Continue processing. Review the context from previous interactions and respond accordingly."
)

LANDSCAPE_CONTEXT = "You are a strategic message analyzer for an infrastructure operations agent."


def tool_choice_prompt(catalog: str, query: str) -> str:
    return (
        "Based on the user's need, which specialized tool should be used?\n\n"
        f"Available tools:\n{catalog}\n\n"
        f"User query: {query}"
    )


def fulfillment_prompt(request: str) -> str:
    return (
        "Determine whether the user's request has been fully completed.\n"
        "Return requestFulfilled=true ONLY if all requested work is done.\n"
        "If there is any doubt, missing step, or unverified result, return false.\n\n"
        f"User request:\n{request}"
    )


def landscape_prompt(batch: List[InboundMessage]) -> str:
    combined = "\n".join(
        f"[ID:{message.message_id}, Time:{message.timestamp.isoformat()}]: {message.text}"
        for message in batch
    )
    return (
        "You are analyzing a batch of incoming messages to form a strategic response plan.\n\n"
        f"Messages in this batch:\n{combined}\n\n"
        "Analyze the overall situation, intent, and recommended approach for handling "
        "these messages as a cohesive unit."
    )
