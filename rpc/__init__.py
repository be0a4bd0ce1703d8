from rpc.web3_transport import Web3FilterTransport, Web3TransportError

__all__ = [
    "Web3FilterTransport",
    "Web3TransportError",
]
