import grpc
import pytest
from lndgrpc.errors import WalletEncryptedError

from app.core.errors import AuthError, NodeConnectionError, UpstreamError
from app.services.lnd_grpc import LndGrpcTransport, decode_cert, decode_macaroon, translate_rpc_error
from tests.conftest import FakeRpcError

PEM = "-----BEGIN CERTIFICATE-----\nMIIBfake\n-----END CERTIFICATE-----\n"


@pytest.fixture
def transport(lnd_nodes):
    t = LndGrpcTransport("h1:10009", PEM.encode().hex(), "0201ab", network="regtest", timeout=2.5)
    yield t
    t.close()


@pytest.fixture
def stub(transport, lnd_nodes):
    return lnd_nodes["h1:10009"]


def test_decode_cert_accepts_pem_and_hex():
    assert decode_cert(PEM) == PEM.encode()
    assert decode_cert(PEM.encode().hex()) == PEM.encode()
    with pytest.raises(NodeConnectionError):
        decode_cert("zz-not-a-cert")


def test_decode_macaroon():
    assert decode_macaroon("0201ab") == b"\x02\x01\xab"
    with pytest.raises(AuthError):
        decode_macaroon("not hex")


@pytest.mark.parametrize("code, expected", [
    (grpc.StatusCode.UNAVAILABLE, NodeConnectionError),
    (grpc.StatusCode.UNIMPLEMENTED, NodeConnectionError),
    (grpc.StatusCode.DEADLINE_EXCEEDED, UpstreamError),
    (grpc.StatusCode.UNAUTHENTICATED, AuthError),
    (grpc.StatusCode.PERMISSION_DENIED, AuthError),
    (grpc.StatusCode.UNKNOWN, UpstreamError),
    (grpc.StatusCode.NOT_FOUND, UpstreamError),
])
def test_translate_rpc_error(code, expected):
    assert isinstance(translate_rpc_error(FakeRpcError(code), "h1:10009"), expected)


def test_deadline_exceeded_is_flagged_as_timeout():
    error = translate_rpc_error(FakeRpcError(grpc.StatusCode.DEADLINE_EXCEEDED), "h1:10009")
    assert error.timeout


def test_client_gets_credentials_in_memory(transport):
    kwargs = transport.client.kwargs

    assert kwargs["ip_address"] == "h1:10009"
    assert kwargs["network"] == "regtest"
    assert kwargs["admin"] is True
    assert kwargs["cert"] == PEM.encode()
    assert kwargs["macaroon"] == "0201ab"
    assert "cert_filepath" not in kwargs
    assert "macaroon_filepath" not in kwargs


def test_bad_macaroon_never_builds_a_client(lnd_nodes):
    with pytest.raises(AuthError):
        LndGrpcTransport("h1:10009", PEM, "not hex")
    assert lnd_nodes == {}


@pytest.mark.asyncio
async def test_typed_rpc_calls(transport, stub):
    assert await transport.get_info() == {"alias": "h1:10009", "pubkey": stub.pubkey}
    assert await transport.channel_balance() == 1234

    invoice = await transport.add_invoice(100, memo="post-1")
    assert invoice == {"r_hash": b"\x07" * 32, "payment_request": "lnbcrt100n1"}
    assert stub.requests["AddInvoice"].memo == "post-1"

    lookup = await transport.lookup_invoice(b"\x07" * 32)
    assert lookup["settled"] is True
    assert stub.requests["LookupInvoice"].r_hash == b"\x07" * 32


@pytest.mark.asyncio
async def test_every_rpc_carries_a_deadline(transport, stub):
    await transport.get_info()
    await transport.channel_balance()
    await transport.add_invoice(100)
    await transport.lookup_invoice(b"\x07" * 32)

    assert [name for name, _ in stub.deadlines] == ["GetInfo", "ChannelBalance", "AddInvoice", "LookupInvoice"]
    assert {deadline for _, deadline in stub.deadlines} == {2.5}


@pytest.mark.asyncio
async def test_hung_node_is_a_timeout(transport, stub):
    transport.timeout = 0.05
    stub.delay = 3600

    with pytest.raises(UpstreamError) as exc_info:
        await transport.get_info()

    assert exc_info.value.timeout


@pytest.mark.asyncio
async def test_rpc_errors_are_translated(transport, stub):
    stub.error = FakeRpcError(grpc.StatusCode.UNAUTHENTICATED)

    with pytest.raises(AuthError):
        await transport.get_info()


@pytest.mark.asyncio
async def test_locked_wallet_is_a_connection_error(transport, stub):
    stub.error = WalletEncryptedError()

    with pytest.raises(NodeConnectionError) as exc_info:
        await transport.get_info()

    assert isinstance(exc_info.value.__cause__, WalletEncryptedError)


@pytest.mark.asyncio
async def test_closed_transport_refuses_calls(transport):
    transport.close()

    with pytest.raises(NodeConnectionError):
        await transport.get_info()
