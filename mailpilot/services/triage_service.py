"""Triage classifier: labels an inbound message before any reply is attempted.

Holds no state. Completion failures propagate; callers treat them as
"do not reply".
"""

from __future__ import annotations

import logging

from mailpilot.core.config import settings
from mailpilot.db.enums import TriageLabel
from mailpilot.services.completion_service import CompletionClient
from mailpilot.services.errors import CompletionError

logger = logging.getLogger(__name__)

EMAIL_TEXT_MARKER = 'EMAIL TEXT: """'

TRIAGE_PROMPT = """
You are an expert email classification system. Your task is to classify the content of a new email into one of three distinct categories. Respond with ONLY the category label.

Here are the categories and their definitions:
1.  **Direct Inquiry**: Any message from a person that requires a unique, contextual response. This includes questions, replies, business proposals, and casual conversation.
2.  **Form Submission**: An email that is automatically generated by a web form, lead capture form, or application system. It typically contains structured data with labels like "Name:", "Email:", "Message:".
3.  **Advertisement**: Automated marketing emails, newsletters, promotions, social media notifications (like from Reddit), or spam. These do not require a personal reply.

**Examples:**
-   **Text:** "wow bro thats cool. what else can you help me with"
    **Classification:** Direct Inquiry
-   **Text:** "Full/Company Name: GBD trans, E-mail: gbdtransllc@gmail.com, Phone Number: 7748238913..."
    **Classification:** Form Submission
-   **Text:** "r/nvidia: 5090 Upgrade Upgraded to 5090 Read More 94 upvotes"
    **Classification:** Advertisement

Now, classify the following email text. Respond with only one of the three category labels.

EMAIL TEXT: \"\"\"
{body}
\"\"\"

CLASSIFICATION:"""


def build_triage_prompt(body: str, *, max_chars: int | None = None) -> str:
    limit = settings.TRIAGE_MAX_CHARS if max_chars is None else max_chars
    return TRIAGE_PROMPT.format(body=(body or "")[:limit])


def parse_label(raw: str) -> TriageLabel:
    """Map free-form completion output onto a TriageLabel."""
    text = (raw or "").strip().lower()
    if "advertisement" in text:
        return TriageLabel.ADVERTISEMENT
    if "form submission" in text:
        return TriageLabel.FORM_SUBMISSION
    if "direct inquiry" in text:
        return TriageLabel.DIRECT_INQUIRY
    raise CompletionError(f"Unrecognized triage label: {raw[:50]!r}")


def classify(body: str, completion: CompletionClient) -> TriageLabel:
    label = parse_label(completion.classify(build_triage_prompt(body)))
    logger.info("Triage result: %s", label.value)
    return label
