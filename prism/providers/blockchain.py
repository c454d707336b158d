"""
Blockchain data providers: Moralis, Etherscan and Alchemy.

Each provider parses its responses into its own tagged models and maps them
onto canonical metric names.
"""

import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, StringConstraints

from prism.core.config import ProviderConfig
from prism.core.exceptions import ProviderResponseError
from prism.core.models import AnalysisRequest, MetricValue, ProviderDescriptor
from prism.core.validation import CHAIN_NETWORKS
from prism.providers.base import HttpProvider

WEI_PER_ETH = Decimal(10) ** 18

# Integer amounts (wei, gas) arrive as strings of decimal digits
WeiAmount = Annotated[str, StringConstraints(pattern=r"^[0-9]+$")]


def _to_native(wei: str) -> float:
    return float(Decimal(wei) / WEI_PER_ETH)


def _days_since(moment: Optional[datetime], now: Optional[float] = None) -> Optional[int]:
    if moment is None:
        return None
    now = now if now is not None else time.time()
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return max(0, int((now - moment.timestamp()) // 86400))


class _Wire(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


# Moralis


class MoralisTransaction(_Wire):
    hash: str
    from_address: str = ""
    to_address: Optional[str] = None
    value: WeiAmount = "0"
    receipt_status: Optional[str] = None
    receipt_gas_used: Optional[WeiAmount] = None
    gas_price: Optional[WeiAmount] = None


class MoralisTransactionPage(_Wire):
    kind: Literal["moralis.transactions"] = "moralis.transactions"
    result: List[MoralisTransaction] = Field(default_factory=list)
    total: Optional[int] = None


class MoralisToken(_Wire):
    token_address: str
    symbol: Optional[str] = None
    possible_spam: bool = False
    verified_contract: bool = False
    usd_value: Optional[float] = None


class MoralisTokenList(_Wire):
    kind: Literal["moralis.tokens"] = "moralis.tokens"
    tokens: List[MoralisToken] = Field(default_factory=list)


class MoralisNft(_Wire):
    token_address: str
    token_id: str
    possible_spam: bool = False


class MoralisNftPage(_Wire):
    kind: Literal["moralis.nfts"] = "moralis.nfts"
    result: List[MoralisNft] = Field(default_factory=list)
    total: Optional[int] = None


class MoralisDefiPosition(_Wire):
    protocol_id: str
    total_usd_value: Optional[float] = None
    total_unclaimed_usd_value: Optional[float] = None
    position_count: int = Field(default=1, alias="positions")


class MoralisDefiSummary(_Wire):
    kind: Literal["moralis.defi"] = "moralis.defi"
    protocols: List[MoralisDefiPosition] = Field(default_factory=list)


class MoralisProvider(HttpProvider):
    """Moralis Web3 Data API."""

    BASE_URL = "https://deep-index.moralis.io/api/v2.2"

    def __init__(self, config: ProviderConfig, client=None, **kwargs):
        descriptor = ProviderDescriptor(
            name="moralis",
            capabilities=frozenset({"transactions", "tokens", "nfts", "defi"}),
            domains=frozenset(CHAIN_NETWORKS),
            has_credentials=bool(config.moralis_api_key),
            reliability={"transactions": 2, "tokens": 3, "nfts": 3, "defi": 3},
            **config.quota_for("moralis"),
        )
        super().__init__(descriptor, config, client, **kwargs)

    def _headers(self) -> Dict[str, str]:
        return {"X-API-Key": self.config.moralis_api_key or "", "accept": "application/json"}

    @staticmethod
    def chain_param(network: str) -> str:
        return hex(CHAIN_NETWORKS[network])

    async def _fetch(self, request: AnalysisRequest, capability: str) -> Dict[str, MetricValue]:
        address = request.subject
        params = {"chain": self.chain_param(request.domain)}
        headers = self._headers()

        if capability == "transactions":
            data = await self.get_json(f"{self.BASE_URL}/{address}", params=params, headers=headers)
            return self.transaction_metrics(MoralisTransactionPage.model_validate(data), address)
        if capability == "tokens":
            data = await self.get_json(f"{self.BASE_URL}/{address}/erc20", params=params, headers=headers)
            return self.token_metrics(MoralisTokenList.model_validate({"tokens": data}))
        if capability == "nfts":
            data = await self.get_json(f"{self.BASE_URL}/{address}/nft", params=params, headers=headers)
            return self.nft_metrics(MoralisNftPage.model_validate(data))
        data = await self.get_json(
            f"{self.BASE_URL}/wallets/{address}/defi/summary", params=params, headers=headers
        )
        return self.defi_metrics(MoralisDefiSummary.model_validate(data))

    @staticmethod
    def transaction_metrics(page: MoralisTransactionPage, address: str) -> Dict[str, MetricValue]:
        txs = page.result
        values = [_to_native(tx.value) for tx in txs]
        counterparties = {
            (tx.to_address if tx.from_address.lower() == address else tx.from_address) or ""
            for tx in txs
        }
        counterparties.discard("")
        gas = sum(
            _to_native(str(int(tx.receipt_gas_used) * int(tx.gas_price)))
            for tx in txs
            if tx.receipt_gas_used and tx.gas_price
        )
        metrics: Dict[str, MetricValue] = {
            "tx_count": page.total if page.total is not None else len(txs),
            "unique_counterparties": len(counterparties),
            "total_value_native": round(sum(values), 6),
            "gas_spent_native": round(gas, 6),
            "failed_tx_count": sum(1 for tx in txs if tx.receipt_status == "0"),
        }
        if values:
            metrics["avg_value_native"] = round(sum(values) / len(values), 6)
        return metrics

    @staticmethod
    def token_metrics(tokens: MoralisTokenList) -> Dict[str, MetricValue]:
        metrics: Dict[str, MetricValue] = {
            "token_count": len(tokens.tokens),
            "spam_token_count": sum(1 for t in tokens.tokens if t.possible_spam),
            "verified_token_count": sum(1 for t in tokens.tokens if t.verified_contract),
        }
        values = [t.usd_value for t in tokens.tokens if t.usd_value]
        if values:
            metrics["top_token_share"] = round(max(values) / sum(values) * 100, 2)
        return metrics

    @staticmethod
    def nft_metrics(page: MoralisNftPage) -> Dict[str, MetricValue]:
        return {
            "nft_count": page.total if page.total is not None else len(page.result),
            "collection_count": len({n.token_address for n in page.result}),
            "spam_nft_count": sum(1 for n in page.result if n.possible_spam),
        }

    @staticmethod
    def defi_metrics(summary: MoralisDefiSummary) -> Dict[str, MetricValue]:
        return {
            "protocol_count": len(summary.protocols),
            "position_count": sum(p.position_count for p in summary.protocols),
            "total_value_usd": round(sum(p.total_usd_value or 0.0 for p in summary.protocols), 2),
            "unclaimed_rewards_usd": round(
                sum(p.total_unclaimed_usd_value or 0.0 for p in summary.protocols), 2
            ),
        }


# Etherscan


class EtherscanTransaction(_Wire):
    hash: str
    from_: str = Field(default="", alias="from")
    to: str = ""
    value: WeiAmount = "0"
    is_error: str = Field(default="0", alias="isError")
    gas_used: WeiAmount = Field(default="0", alias="gasUsed")
    gas_price: WeiAmount = Field(default="0", alias="gasPrice")


class EtherscanTokenTransfer(_Wire):
    contract_address: str = Field(alias="contractAddress")
    token_symbol: str = Field(default="", alias="tokenSymbol")


class EtherscanSourceCode(_Wire):
    source_code: str = Field(default="", alias="SourceCode")
    contract_name: str = Field(default="", alias="ContractName")
    proxy: str = Field(default="0", alias="Proxy")


class EtherscanEnvelope(_Wire):
    kind: Literal["etherscan.envelope"] = "etherscan.envelope"
    status: str
    message: str = ""
    result: Any = None


class EtherscanProvider(HttpProvider):
    """Etherscan account and contract APIs (Ethereum mainnet only)."""

    BASE_URL = "https://api.etherscan.io/api"

    def __init__(self, config: ProviderConfig, client=None, **kwargs):
        descriptor = ProviderDescriptor(
            name="etherscan",
            capabilities=frozenset({"transactions", "tokens", "labels"}),
            domains=frozenset({"ethereum"}),
            has_credentials=bool(config.etherscan_api_key),
            reliability={"transactions": 3, "tokens": 1, "labels": 3},
            **config.quota_for("etherscan"),
        )
        super().__init__(descriptor, config, client, **kwargs)

    async def _call(self, **params) -> Any:
        params["apikey"] = self.config.etherscan_api_key or ""
        envelope = EtherscanEnvelope.model_validate(await self.get_json(self.BASE_URL, params=params))
        if envelope.status != "1":
            # "No transactions found" is an empty result, not an error
            if isinstance(envelope.result, list) or envelope.message.startswith("No "):
                return []
            raise ProviderResponseError(self.name, f"API error: {envelope.result or envelope.message}")
        return envelope.result

    async def _fetch(self, request: AnalysisRequest, capability: str) -> Dict[str, MetricValue]:
        address = request.subject
        if capability == "transactions":
            rows = await self._call(module="account", action="txlist", address=address, sort="desc")
            txs = [EtherscanTransaction.model_validate(r) for r in rows]
            return self.transaction_metrics(txs, address)
        if capability == "tokens":
            rows = await self._call(module="account", action="tokentx", address=address, sort="desc")
            transfers = [EtherscanTokenTransfer.model_validate(r) for r in rows]
            return {"token_count": len({t.contract_address.lower() for t in transfers})}

        rows = await self._call(module="contract", action="getsourcecode", address=address)
        return self.label_metrics([EtherscanSourceCode.model_validate(r) for r in rows or []])

    @staticmethod
    def transaction_metrics(txs: List[EtherscanTransaction], address: str) -> Dict[str, MetricValue]:
        values = [_to_native(tx.value) for tx in txs]
        counterparties = {(tx.to if tx.from_.lower() == address else tx.from_).lower() for tx in txs}
        counterparties.discard("")
        gas = sum(_to_native(str(int(tx.gas_used) * int(tx.gas_price))) for tx in txs)
        metrics: Dict[str, MetricValue] = {
            "tx_count": len(txs),
            "unique_counterparties": len(counterparties),
            "total_value_native": round(sum(values), 6),
            "gas_spent_native": round(gas, 6),
            "failed_tx_count": sum(1 for tx in txs if tx.is_error == "1"),
        }
        if values:
            metrics["avg_value_native"] = round(sum(values) / len(values), 6)
        return metrics

    @staticmethod
    def label_metrics(entries: List[EtherscanSourceCode]) -> Dict[str, MetricValue]:
        entry = entries[0] if entries else EtherscanSourceCode()
        verified = bool(entry.source_code)
        metrics: Dict[str, MetricValue] = {
            # unverified contracts come back with an empty name and source
            "is_contract": verified or bool(entry.contract_name),
            "is_verified": verified,
            "is_proxy": entry.proxy == "1",
        }
        if entry.contract_name:
            metrics["contract_name"] = entry.contract_name
        return metrics


# Alchemy


class AlchemyTokenBalance(_Wire):
    contract_address: str = Field(alias="contractAddress")
    token_balance: Optional[str] = Field(default=None, alias="tokenBalance")


class AlchemyTokenBalances(_Wire):
    kind: Literal["alchemy.tokens"] = "alchemy.tokens"
    address: str = ""
    token_balances: List[AlchemyTokenBalance] = Field(default_factory=list, alias="tokenBalances")


class AlchemyNftContract(_Wire):
    address: str
    is_spam: bool = Field(default=False, alias="isSpam")


class AlchemyNft(_Wire):
    contract: AlchemyNftContract
    token_id: str = Field(alias="tokenId")


class AlchemyNftPage(_Wire):
    kind: Literal["alchemy.nfts"] = "alchemy.nfts"
    owned_nfts: List[AlchemyNft] = Field(default_factory=list, alias="ownedNfts")
    total_count: Optional[int] = Field(default=None, alias="totalCount")


class AlchemyTransferMetadata(_Wire):
    block_timestamp: Optional[datetime] = Field(default=None, alias="blockTimestamp")


class AlchemyTransfer(_Wire):
    hash: str
    metadata: AlchemyTransferMetadata = Field(default_factory=AlchemyTransferMetadata)


class AlchemyTransfers(_Wire):
    kind: Literal["alchemy.transfers"] = "alchemy.transfers"
    transfers: List[AlchemyTransfer] = Field(default_factory=list)


class AlchemyProvider(HttpProvider):
    """Alchemy Token, NFT and Transfers APIs."""

    NETWORKS = {
        "ethereum": "eth-mainnet",
        "polygon": "polygon-mainnet",
        "arbitrum": "arb-mainnet",
        "optimism": "opt-mainnet",
        "base": "base-mainnet",
        "avalanche": "avax-mainnet",
    }

    def __init__(self, config: ProviderConfig, client=None, clock=time.time, **kwargs):
        descriptor = ProviderDescriptor(
            name="alchemy",
            capabilities=frozenset({"tokens", "nfts", "activity"}),
            domains=frozenset(self.NETWORKS),
            has_credentials=bool(config.alchemy_api_key),
            reliability={"tokens": 2, "nfts": 2, "activity": 3},
            **config.quota_for("alchemy"),
        )
        super().__init__(descriptor, config, client, **kwargs)
        self._now = clock

    def _url(self, network: str, path: str = "") -> str:
        return f"https://{self.NETWORKS[network]}.g.alchemy.com{path}/{self.config.alchemy_api_key}"

    async def _rpc(self, network: str, method: str, params: list) -> Any:
        body = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        data = await self.post_json(self._url(network, "/v2"), json=body)
        if "error" in data:
            raise ProviderResponseError(self.name, f"RPC error: {data['error'].get('message', data['error'])}")
        return data.get("result")

    async def _fetch(self, request: AnalysisRequest, capability: str) -> Dict[str, MetricValue]:
        address = request.subject
        if capability == "tokens":
            result = await self._rpc(request.domain, "alchemy_getTokenBalances", [address, "erc20"])
            return self.token_metrics(AlchemyTokenBalances.model_validate(result))
        if capability == "nfts":
            data = await self.get_json(
                self._url(request.domain, "/nft/v3") + "/getNFTsForOwner",
                params={"owner": address, "withMetadata": "false"},
            )
            return self.nft_metrics(AlchemyNftPage.model_validate(data))

        result = await self._rpc(
            request.domain,
            "alchemy_getAssetTransfers",
            [
                {
                    "fromAddress": address,
                    "category": ["external", "erc20", "erc721", "erc1155"],
                    "withMetadata": True,
                    "order": "desc",
                }
            ],
        )
        return self.activity_metrics(AlchemyTransfers.model_validate(result), self._now())

    @staticmethod
    def token_metrics(balances: AlchemyTokenBalances) -> Dict[str, MetricValue]:
        held = [
            b for b in balances.token_balances if b.token_balance and int(b.token_balance, 16) > 0
        ]
        return {"token_count": len(held)}

    @staticmethod
    def nft_metrics(page: AlchemyNftPage) -> Dict[str, MetricValue]:
        return {
            "nft_count": page.total_count if page.total_count is not None else len(page.owned_nfts),
            "collection_count": len({n.contract.address.lower() for n in page.owned_nfts}),
            "spam_nft_count": sum(1 for n in page.owned_nfts if n.contract.is_spam),
        }

    @staticmethod
    def activity_metrics(transfers: AlchemyTransfers, now: float) -> Dict[str, MetricValue]:
        stamps = [t.metadata.block_timestamp for t in transfers.transfers if t.metadata.block_timestamp]
        metrics: Dict[str, MetricValue] = {
            "transfer_count": len(transfers.transfers),
            "days_active": len({s.date() for s in stamps}),
        }
        if stamps:
            metrics["last_active_days_ago"] = _days_since(max(stamps), now)
        return metrics
