from domain.base_types import AccountId, AssetId

BTC = AssetId("BTC")
ETH = AssetId("ETH")
USDC = AssetId("USDC")

EXCHANGE = AccountId("exchange")
COLD = AccountId("cold")
BROKER = AccountId("broker")
UNKNOWN_ACCOUNT = AccountId("nowhere")
