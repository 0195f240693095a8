"""Wire protocols: signaling control messages and tunnel framing."""

from .framing import (
    HEADER_TERMINATOR,
    HeaderBoundaryScanner,
    RequestDecoder,
    RequestEncoder,
    ResponseDecoder,
    encode_request_head,
    encode_routing_tag,
    parse_request_head,
    parse_response_head,
)
from .http import (
    InterceptedRequest,
    RequestHead,
    ResponseBody,
    ResponseHead,
    TunnelResponse,
    get_header,
)
from .signaling import Answer, Candidate, Offer, Register, decode_signaling, encode_signaling

__all__ = [
    "HEADER_TERMINATOR",
    "HeaderBoundaryScanner",
    "RequestDecoder",
    "RequestEncoder",
    "ResponseDecoder",
    "encode_request_head",
    "encode_routing_tag",
    "parse_request_head",
    "parse_response_head",
    "InterceptedRequest",
    "RequestHead",
    "ResponseBody",
    "ResponseHead",
    "TunnelResponse",
    "get_header",
    "Register",
    "Offer",
    "Answer",
    "Candidate",
    "decode_signaling",
    "encode_signaling",
]
