def format_duration(seconds: float) -> str:
    if seconds <= 0:
        return "0 ms"
    if seconds < 1:
        return f"{seconds * 1000:.0f} ms"
    if seconds < 60:
        return f"{seconds:.1f} s"
    minutes, rest = divmod(seconds, 60)
    return f"{int(minutes)} min {rest:.0f} s"


def format_elapsed_ms(milliseconds: float) -> str:
    return format_duration(milliseconds / 1000)


def format_cost(amount: float) -> str:
    """Dollar amount; sub-cent LLM spend keeps six decimals."""
    if amount == 0:
        return "$0.00"
    if abs(amount) < 0.01:
        return f"${amount:.6f}"
    return f"${amount:.2f}"
