"""
Prompt text sent to the completion service.

Each builder returns the user-task prompt for one pipeline step; the system
prompt is shared by every call.
"""

import json

from .schemas import FinishedInvoice, StructuredInvoice

SYSTEM_PROMPT = (
    "You are an invoicing assistant for independent tradespeople. "
    "You turn rough job notes into clean, accurate invoice data. "
    "Never invent prices, hours, or items that the notes do not support. "
    "Always answer with JSON only."
)

JSON_ONLY_SUFFIX = "\n\nReturn only JSON."

RETRY_SUFFIX = "\n\nYou must reply with a single JSON object. Do not include any extra text."

PARSE_PROMPT_HEADER = "Parse messy invoice/job notes into a structured invoice model."

AUDIT_PROMPT_HEADER = "You are auditing a parsed invoice against messy source notes."

_STRUCTURED_SHAPE = """{
  "customerName": "optional string",
  "invoiceNumber": "optional string",
  "issueDate": "optional string",
  "servicePeriodStart": "optional string",
  "servicePeriodEnd": "optional string",
  "workSessions": [
    {
      "date": "optional string",
      "tasks": [
        {"description": "string", "hours": 0, "rate": 0, "amount": 0}
      ]
    }
  ],
  "materials": [
    {"description": "string", "quantity": 0, "unitCost": 0, "amount": 0}
  ],
  "notes": "optional string"
}"""

_PARSE_RULES = [
    "- Keep tasks itemized, not overly grouped.",
    '- Prefer the user\'s task wording; avoid generic labels like "Labor" if a specific task is mentioned.',
    "- Group work sessions by date when a date exists.",
    "- Omit unknown numeric fields instead of guessing.",
    "- Never infer or invent labor hours, labor rate, or labor amount when they are missing.",
    "- If the notes explicitly say a visit/task was free or not charged, set amount to 0 for that task.",
    "- If the notes explicitly say a part/material was free or not charged, set amount to 0 for that material.",
    "- Use numbers (not strings) for numeric values.",
]

_AUDIT_SHAPE = """{
  "assumptions": ["string"],
  "decisions": [
    {"kind":"tax|billing", "prompt":"string", "sourceSnippet":"optional"}
  ],
  "unparsedLines": ["string"]
}"""

_AUDIT_RULES = [
    "- If the notes explicitly say no charge/free/didn't charge, do NOT create a decision; add an assumption instead.",
    "- If something is ambiguous (e.g. maybe/up to you/sometimes/do what makes sense), add a decision.",
    "- Only add a tax decision if the user explicitly asks to apply tax or gives a tax rate.",
    '- If tax is mentioned ambiguously, add assumption: "Tax assumed 0%".',
    "- If any source lines are not reflected in the structured invoice, list them in unparsedLines.",
    "- Keep unparsedLines short (verbatim snippets) and only include relevant notes.",
    "- Keep decisions short and specific to the item.",
    "- Do not invent amounts or add new items.",
]


def _invoice_json(model) -> str:
    return json.dumps(model.to_json_dict())


def build_parse_prompt(source_text: str) -> str:
    return "\n".join(
        [PARSE_PROMPT_HEADER, "Output JSON with this shape:", _STRUCTURED_SHAPE, "Rules:", *_PARSE_RULES,
         f"Source text:\n{source_text}"]
    )


def build_audit_prompt(source_text: str, structured_invoice: StructuredInvoice) -> str:
    return "\n".join(
        [AUDIT_PROMPT_HEADER, "Return JSON with this shape:", _AUDIT_SHAPE, "Rules:", *_AUDIT_RULES,
         f"Source text:\n{source_text}",
         f"Structured invoice JSON:\n{_invoice_json(structured_invoice)}"]
    )


def build_reword_line_prompt(description: str, tone: str) -> str:
    return "\n".join(
        [
            "Reword a single invoice line item.",
            "Keep the same meaning and professionalism.",
            "Do not change price, quantity, or unit context.",
            f"Tone preference: {tone}.",
            'Return JSON with shape: {"description":"..."}.',
            f"Original line description: {json.dumps(description)}",
        ]
    )


def build_reword_full_prompt(invoice: FinishedInvoice, tone: str) -> str:
    return "\n".join(
        [
            "Reword all invoice line item descriptions.",
            "Keep the same meaning and professionalism for each line.",
            "Do not change amounts, quantities, rates, dates, or IDs.",
            f"Tone preference: {tone}.",
            'Return JSON with shape: {"lineItems":[{"id":"...","description":"..."}],"notes":"optional"}.',
            f"Invoice JSON: {_invoice_json(invoice)}",
        ]
    )


def build_edit_prompt(invoice: FinishedInvoice, instruction: str) -> str:
    return "\n".join(
        [
            "You update an existing invoice based on a user instruction.",
            'Return JSON with shape: {"invoice":{...},"followUp":"optional string"}.',
            "Rules:",
            "- Only change fields explicitly requested.",
            "- Do not change invoiceNumber unless asked.",
            "- Do not invent labor hours, rates, or amounts.",
            "- If the instruction is ambiguous, leave the invoice unchanged and ask a follow-up question.",
            "- Preserve currency, existing IDs, and totals will be recalculated.",
            f"User instruction: {instruction}",
            f"Current invoice JSON: {_invoice_json(invoice)}",
        ]
    )
