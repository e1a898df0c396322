import main


def bearer(user):
    return {"Authorization": f"Bearer {main.create_token(user)}"}
