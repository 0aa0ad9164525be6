from finance_categorizer.models import Category, Transaction

SYSTEM_INSTRUCTIONS = (
    "You are a financial transaction categorization expert. "
    "Categorize each transaction into the most appropriate of the given categories."
)

# Token estimates: about four characters per token plus fixed formatting overheads.
_CHARS_PER_TOKEN = 4
_SYSTEM_PROMPT_CHARS = 200
_CATEGORY_OVERHEAD_TOKENS = 10
_TRANSACTION_FIELD_TOKENS = 20
_TRANSACTION_OVERHEAD_TOKENS = 50
OUTPUT_TOKENS_PER_TRANSACTION = 100


def build_categorization_prompt(transactions: list[Transaction], categories: list[Category]) -> str:
    lines = ["Available categories:"]
    for category in categories:
        lines.append(f"- {category.name} (ID: {category.id})")

    lines.append("")
    lines.append("Transactions to categorize:")
    for index, transaction in enumerate(transactions, start=1):
        lines.append(f"{index}. ID: {transaction.id}")
        lines.append(f"   Amount: {transaction.amount:.2f}")
        if transaction.merchant_name:
            lines.append(f"   Merchant: {transaction.merchant_name}")
        if transaction.description:
            lines.append(f"   Description: {transaction.description}")
        lines.append(f"   Date: {transaction.date.strftime('%Y-%m-%d')}")
        lines.append("")

    lines.extend(
        [
            "For each transaction, respond with a JSON object containing:",
            "- transaction_id: the transaction ID (string)",
            "- category_id: the most appropriate category ID (integer)",
            "- confidence: your confidence level (0.0 to 1.0)",
            "- reasoning: brief explanation of your choice",
            "",
            "IMPORTANT: Respond with ONLY a valid JSON array of these objects, one for each "
            "transaction. Do not include any other text.",
        ]
    )
    return "\n".join(lines)


def estimate_tokens(transactions: list[Transaction], categories: list[Category]) -> tuple[int, int]:
    """Return ``(input_tokens, output_tokens)`` estimated from text length."""
    input_tokens = _SYSTEM_PROMPT_CHARS // _CHARS_PER_TOKEN
    for category in categories:
        input_tokens += len(category.name) // _CHARS_PER_TOKEN + _CATEGORY_OVERHEAD_TOKENS

    for transaction in transactions:
        input_tokens += len(transaction.id) // _CHARS_PER_TOKEN + _TRANSACTION_FIELD_TOKENS
        if transaction.description:
            input_tokens += len(transaction.description) // _CHARS_PER_TOKEN
        if transaction.merchant_name:
            input_tokens += len(transaction.merchant_name) // _CHARS_PER_TOKEN
        input_tokens += _TRANSACTION_OVERHEAD_TOKENS

    output_tokens = len(transactions) * OUTPUT_TOKENS_PER_TRANSACTION
    return input_tokens, output_tokens
