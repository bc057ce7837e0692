import shortuuid


def generate_message_id(prefix: str = "msg") -> str:
    return f"{prefix}-{shortuuid.ShortUUID().random(length=14)}"
