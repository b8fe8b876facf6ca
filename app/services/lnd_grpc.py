import asyncio
import binascii
import logging

import grpc
from lndgrpc import LNDClient
from lndgrpc.compiled import lightning_pb2 as ln
from lndgrpc.errors import WalletEncryptedError

from app.core.config import settings
from app.core.errors import AuthError, NodeConnectionError, UpstreamError

logger = logging.getLogger(__name__)

_CONNECTION_CODES = {grpc.StatusCode.UNAVAILABLE}
_AUTH_CODES = {grpc.StatusCode.UNAUTHENTICATED, grpc.StatusCode.PERMISSION_DENIED}


def decode_cert(cert: str) -> bytes:
    """
    El cert llega como PEM o como PEM codificado en hex (formato de lncli/Polar).
    """
    cert = cert.strip()
    if cert.startswith("-----BEGIN"):
        return cert.encode()
    try:
        return bytes.fromhex(cert)
    except ValueError as e:
        raise NodeConnectionError("Certificado TLS inválido") from e


def decode_macaroon(macaroon: str) -> bytes:
    try:
        return binascii.unhexlify(macaroon.strip())
    except (binascii.Error, ValueError) as e:
        raise AuthError("Macaroon inválido, se espera hex") from e


def translate_rpc_error(e: grpc.RpcError, host: str) -> Exception:
    code = e.code() if hasattr(e, "code") else None
    details = e.details() if hasattr(e, "details") else str(e)
    if code in _AUTH_CODES:
        return AuthError(f"{host} rechazó el macaroon: {details}")
    if code in _CONNECTION_CODES:
        return NodeConnectionError(f"No se pudo conectar a {host}: {details}")
    if code == grpc.StatusCode.UNIMPLEMENTED:
        # LND responde así mientras la wallet sigue cifrada
        return NodeConnectionError(f"Wallet bloqueada en {host}: {details}")
    if code == grpc.StatusCode.DEADLINE_EXCEEDED:
        return UpstreamError(f"Timeout RPC en {host}: {details}", timeout=True)
    return UpstreamError(f"Error RPC en {host}: {details}")


class LndGrpcTransport:
    """
    Canal gRPC autenticado contra un nodo LND externo.

    Cert y macaroon se pasan en memoria a lndgrpc, nunca tocan el disco.
    Las llamadas son bloqueantes y se ejecutan en un hilo aparte, siempre con
    deadline gRPC: si el nodo se cuelga, el hilo se libera al vencer el plazo.
    """

    def __init__(self, host: str, cert: str, macaroon: str, network: str = None, timeout: float = None):
        self.host = host
        self.timeout = timeout or settings.LND_RPC_TIMEOUT
        cert_bytes = decode_cert(cert)
        decode_macaroon(macaroon)

        try:
            self.client = LNDClient(
                ip_address=host,
                network=network or settings.LND_NETWORK,
                cert=cert_bytes,
                macaroon=macaroon.strip(),
                admin=True,
            )
        except (OSError, ValueError) as e:
            raise NodeConnectionError(f"No se pudo preparar el canal a {host}: {e}") from e

    async def _call(self, method: str, request):
        if self.client is None:
            raise NodeConnectionError(f"Canal a {self.host} cerrado")
        rpc = getattr(self.client._ln_stub, method)
        try:
            return await asyncio.to_thread(rpc, request, timeout=self.timeout)
        except grpc.RpcError as e:
            raise translate_rpc_error(e, self.host) from e
        except WalletEncryptedError as e:
            raise NodeConnectionError(f"Wallet bloqueada en {self.host}") from e

    async def get_info(self):
        info = await self._call("GetInfo", ln.GetInfoRequest())
        return {
            "alias": info.alias,
            "pubkey": info.identity_pubkey,
        }

    async def channel_balance(self) -> int:
        response = await self._call("ChannelBalance", ln.ChannelBalanceRequest())
        return int(response.balance)

    async def add_invoice(self, amount_sat: int, memo: str = ""):
        response = await self._call("AddInvoice", ln.Invoice(value=amount_sat, memo=memo))
        return {
            "r_hash": bytes(response.r_hash),
            "payment_request": response.payment_request,
        }

    async def lookup_invoice(self, r_hash: bytes):
        invoice = await self._call("LookupInvoice", ln.PaymentHash(r_hash=r_hash))
        return {
            "settled": invoice.settled,
            "memo": invoice.memo,
            "amt_paid_sat": invoice.amt_paid_sat,
        }

    def close(self):
        self.client = None
