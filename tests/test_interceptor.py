"""
Test the mitmproxy addon hooks with stand-in flow objects
"""

from types import SimpleNamespace

from structlog.testing import capture_logs

from redirect_proxy.interception.interceptor import RedirectInterceptor
from redirect_proxy.interception.policy import (
    InterceptedDomainSet,
    RedirectPolicy,
    RedirectTarget,
)


def make_interceptor(**kwargs):
    policy = RedirectPolicy(
        InterceptedDomainSet.from_iterable([".bhsr.com", ".mihoyo.com"]),
        RedirectTarget("127.0.0.1", 8888),
        gateway_host="gate.example.com"
    )
    return RedirectInterceptor(policy, **kwargs)


def make_clienthello(sni=None, address=None):
    return SimpleNamespace(
        client_hello=SimpleNamespace(sni=sni),
        context=SimpleNamespace(server=SimpleNamespace(address=address)),
        ignore_connection=False
    )


def make_flow(host, url):
    request = SimpleNamespace(pretty_host=host, pretty_url=url, url=url)
    return SimpleNamespace(request=request, metadata={})


def test_intercepted_tunnel_is_decrypted():
    interceptor = make_interceptor()
    data = make_clienthello(sni="api.bhsr.com")

    interceptor.tls_clienthello(data)

    assert data.ignore_connection is False
    assert interceptor.stats["tunnels_intercepted"] == 1


def test_other_tunnel_passes_through():
    interceptor = make_interceptor()
    data = make_clienthello(sni="www.google.com", address=("www.google.com", 443))

    interceptor.tls_clienthello(data)

    assert data.ignore_connection is True
    assert interceptor.stats["tunnels_passed_through"] == 1


def test_tunnel_without_sni_uses_connect_target():
    interceptor = make_interceptor()
    data = make_clienthello(sni=None, address=("sdk.mihoyo.com", 443))

    interceptor.tls_clienthello(data)

    assert data.ignore_connection is False


def test_tunnel_without_any_host_passes_through():
    interceptor = make_interceptor()
    data = make_clienthello(sni=None, address=None)

    interceptor.tls_clienthello(data)

    assert data.ignore_connection is True


def test_request_rewritten_in_place():
    interceptor = make_interceptor()
    flow = make_flow("api.bhsr.com", "https://api.bhsr.com/v1/login?x=1")

    interceptor.request(flow)

    assert flow.request.url == "http://127.0.0.1:8888/v1/login?x=1"
    assert flow.metadata["redirect_rule"] == "intercepted_domain"
    assert interceptor.get_stats()["requests_rewritten"] == 1


def test_gateway_lookup_rewritten():
    interceptor = make_interceptor()
    flow = make_flow("gate.example.com", "http://gate.example.com/query_gateway/list")

    interceptor.request(flow)

    assert flow.request.url == "http://127.0.0.1:8888/query_gateway/list"


def test_other_request_untouched():
    interceptor = make_interceptor()
    url = "http://gate.example.com/other/list"
    flow = make_flow("gate.example.com", url)

    interceptor.request(flow)

    assert flow.request.url == url
    assert "redirect_rule" not in flow.metadata
    assert interceptor.stats["requests_rewritten"] == 0


def test_request_hook_error_does_not_raise():
    with capture_logs() as logs:
        interceptor = make_interceptor()
        interceptor.request(SimpleNamespace(request=None, metadata={}))

    assert interceptor.stats["errors"] == 1
    assert any(entry["event"] == "Error in request hook" for entry in logs)


def test_established_upstream_is_trusted():
    interceptor = make_interceptor()
    data = SimpleNamespace(conn=SimpleNamespace(sni="api.bhsr.com", error=None))

    interceptor.tls_established_server(data)

    assert interceptor.stats["upstreams_trusted"] == 1
    assert interceptor.stats["upstreams_rejected"] == 0


def test_failed_upstream_is_rejected_and_logged():
    data = SimpleNamespace(
        conn=SimpleNamespace(sni="api.bhsr.com", error="Certificate verify failed: hostname mismatch")
    )

    with capture_logs() as logs:
        interceptor = make_interceptor()
        interceptor.tls_failed_server(data)

    assert interceptor.stats["upstreams_rejected"] == 1
    warning = next(entry for entry in logs if entry["event"] == "Upstream certificate rejected")
    assert warning["policy_errors"] == ["remote_certificate_name_mismatch"]
    assert warning["sni"] == "api.bhsr.com"


def test_custom_trust_policy_receives_errors():
    seen = []

    def trust_policy(errors):
        seen.append(set(errors))
        return True

    interceptor = make_interceptor(trust_policy=trust_policy)
    data = SimpleNamespace(conn=SimpleNamespace(sni="x", error="self-signed certificate"))

    interceptor.tls_failed_server(data)

    assert len(seen) == 1 and len(seen[0]) == 1
    assert interceptor.stats["upstreams_trusted"] == 1
