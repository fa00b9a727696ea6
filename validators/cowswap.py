# Validator for CowSwap settlement submission.

SETTLEMENT = "0x9008d19f58aabd9ed0d60971565aa8510560ab41"
SETTLE_SELECTOR = "0x13d79a0b"
WETH = "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2"
TEAM_MULTISIG = "0x6c642cafcbd9d8383250bb25f67ae409147f78b2"


def lower(value):
    return (value or "").lower()


def validate_message(account, message):
    print("message signature not accepted")
    return False


def validate_transaction(account, transaction):
    if lower(transaction.get("to")) != SETTLEMENT or lower(transaction.get("data"))[:10] != SETTLE_SELECTOR:
        print("not a CowSwap settlement")
        return False
    return True


def validate_typed_data(account, typed_data):
    domain = typed_data["domain"]
    if (
        domain.get("name") != "Gnosis Protocol"
        or domain.get("version") != "v2"
        or lower(domain.get("verifyingContract")) != SETTLEMENT
        or typed_data["primaryType"] != "Order"
    ):
        print("not a CowSwap order")
        return False

    order = typed_data["message"]
    if lower(order.get("buyToken")) != WETH:
        return "only buying WETH is allowed"
    if lower(order.get("receiver")) != TEAM_MULTISIG:
        return "proceeds not going to the team multi-sig"
    return True


print("loaded CowSwap validator. MOO!")
