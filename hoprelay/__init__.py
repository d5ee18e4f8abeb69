"""
hoprelay — store-and-forward message relay with anti-entropy sync.

Architecture:
    Diff:      peers exchange id batches, learn which messages each side lacks
    Push/Pull: resumable chunked transfer of message content
    Admission: expiry, hops, size, credentials, signature, content hash
    Store:     ~/.hoprelay/store/messages/<sha256(id)>.msg + index.json
"""

__version__ = "0.1.0"

# Admission policy defaults
DEFAULT_MAX_HOPS = 16
DEFAULT_MAX_MESSAGE_SIZE = 16 * 1024 * 1024  # 16 MB

# Transfer defaults
DEFAULT_CHUNK_SIZE = 256 * 1024  # 256 KB, well under the frame cap once base64'd
DEFAULT_LEASE_IDLE_TIMEOUT = 60.0  # seconds without forward progress
DEFAULT_DIFF_BATCH_SIZE = 100
MAX_DIFF_BATCH_SIZE = 500

# Rate limits (tokens per second, bucket size)
DEFAULT_PEER_RATE = 5.0
DEFAULT_PEER_BURST = 20
DEFAULT_RECIPIENT_RATE = 2.0
DEFAULT_RECIPIENT_BURST = 10

# Wire constants
P2P_PROTOCOL_VERSION = "1.0"
P2P_DEFAULT_PORT = 9745
P2P_MAGIC = b"HOP1"
P2P_MAX_PAYLOAD = 2 * 1024 * 1024  # 2MB

# Sweep loop: purge expired messages and reap idle leases
DEFAULT_SWEEP_INTERVAL = 30.0
