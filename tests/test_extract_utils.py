import pytest

from pong0.workflows.errors import (
    BotDetected,
    EmptyResult,
    UnrecognizedPage,
    UpstreamForbidden,
    UpstreamNotFound,
    UpstreamRateLimited,
    UpstreamServerError,
)
from pong0.workflows.extract_utils import (
    IP_STRATEGIES,
    PageContext,
    first_present,
    owner_with_tags,
    parse_ip_page,
)
from pong0.workflows.pong0_config import ATTRIBUTION_URL

DOM_PAGE = """
<html><head><title>1.1.1.1 - Ping0.cc</title></head><body>
<div class="line loc"><div class="name">位置</div>
  <div class="content"><img src="/static/img/flags/au.png"> 澳大利亚 &amp; 悉尼 {{ region }} <a href="#">错误提交</a></div></div>
<div class="line asn"><div class="name">ASN</div><div class="content"><a href="/as/AS13335">AS13335</a></div></div>
<div class="line asnname"><div class="name">ASN 所有者</div>
  <div class="content">Cloudflare, Inc. — cloudflare.com <span class="label">IDC</span></div></div>
<div class="line orgname"><div class="name">企业</div>
  <div class="content">Example Org — legacy <span class="label">ISP</span><span class="label">Business</span></div></div>
<div class="line"><div class="name">经度</div><div class="content"> 151.2 </div></div>
<div class="line"><div class="name">纬度</div><div class="content">-33.8</div></div>
<div class="line line-iptype"><div class="content"><span class="label">IDC机房IP</span><span class="label">广播</span></div></div>
<div class="line line-risk"><div class="content"><div class="riskbar">
  <div class="riskcurrent"><span class="value">12%</span><span class="lab">纯净</span></div></div></div></div>
<div class="line line-nativeip"><div class="content"><span class="label">原生 IP</span></div></div>
</body></html>
"""

SCRIPT_PAGE = """
<html><head><title>Ping0.cc</title>
<script>
  window.ip = "1.1.1.1";
  window.loc = "Example City &amp; Port";
  window.longitude = "10.5";
  window.latitude = '20.25';
</script></head><body>
<div class="line"><div class="name">经度</div><div class="content">99</div></div>
</body></html>
"""


def test_dom_fallbacks_build_full_record() -> None:
    record = parse_ip_page(DOM_PAGE)

    assert record.ip == "1.1.1.1"
    assert record.ip_location == "澳大利亚 & 悉尼"
    assert record.country_flag == "au"
    assert record.asn == "AS13335"
    assert record.asn_owner == "Cloudflare, Inc."
    assert record.asn_type == "IDC"
    assert record.organization == "Example Org"
    assert record.org_type == "ISP; Business"
    assert record.longitude == "151.2"
    assert record.latitude == "-33.8"
    assert record.ip_type == "IDC机房IP; 广播"
    assert record.risk_value == "12% 纯净"
    assert record.native_ip == "原生 IP"
    assert record.attribution == ATTRIBUTION_URL


def test_script_globals_take_precedence() -> None:
    record = parse_ip_page(SCRIPT_PAGE)

    assert record.ip == "1.1.1.1"
    assert record.ip_location == "Example City & Port"
    assert record.longitude == "10.5"
    assert record.latitude == "20.25"


def test_record_dict_omits_absent_fields() -> None:
    html = "<html><head><script>window.ip = '8.8.8.8';</script></head><body></body></html>"

    payload = parse_ip_page(html).to_dict()

    assert payload == {"ip": "8.8.8.8", "princess": ATTRIBUTION_URL}


def test_owner_without_tags_yields_empty_type() -> None:
    ctx = PageContext('<div class="line orgname"><div class="content">Solo Org</div></div>')

    assert owner_with_tags(ctx, ".line.orgname .content") == ("Solo Org", "")


def test_ip_strategy_order() -> None:
    ctx = PageContext("<title>9.9.9.9 - Ping0.cc</title><script>window.ip = '1.2.3.4';</script>")
    assert first_present(IP_STRATEGIES, ctx) == "1.2.3.4"

    ctx = PageContext("<title>9.9.9.9 - Ping0.cc</title>")
    assert first_present(IP_STRATEGIES, ctx) == "9.9.9.9"

    ctx = PageContext("<title>Ping0.cc</title>")
    assert first_present(IP_STRATEGIES, ctx) is None


@pytest.mark.parametrize(
    "phrase, error_type",
    [
        ("访问频率过高，请稍后再试", UpstreamRateLimited),
        ("服务暂时无法访问", UpstreamServerError),
        ("查询不到此IP的信息", UpstreamNotFound),
        ("访问被拒绝", UpstreamForbidden),
        ("您被识别为机器人", BotDetected),
    ],
)
def test_marker_phrases_classify_error_pages(phrase, error_type) -> None:
    html = f"<html><head><title>Ping0.cc</title></head><body><p>{phrase}</p></body></html>"

    with pytest.raises(error_type) as excinfo:
        parse_ip_page(html)

    assert excinfo.value.status is None


def test_bot_detected_is_a_forbidden_error() -> None:
    with pytest.raises(UpstreamForbidden):
        parse_ip_page("<html><body>blocked robots</body></html>")


def test_early_checks() -> None:
    with pytest.raises(EmptyResult):
        parse_ip_page("")
    with pytest.raises(UpstreamServerError):
        parse_ip_page("<html><body>系统发生错误</body></html>")
    with pytest.raises(UnrecognizedPage) as excinfo:
        parse_ip_page("<html><head><title>502 Error</title></head><body></body></html>")
    assert "502 Error" in excinfo.value.message


def test_short_unrecognized_page_carries_excerpt() -> None:
    with pytest.raises(UnrecognizedPage) as excinfo:
        parse_ip_page("<html><body><h1>Hello</h1><p>nothing to see</p></body></html>")

    message = excinfo.value.message
    assert "content length: 20" in message
    assert '"Hello nothing to see"' in message


def test_long_unrecognized_page_prefers_error_element_text() -> None:
    filler = "lorem " * 250
    html = (
        "<html><head><title>Maintenance</title></head><body>"
        f'<h1>Heading</h1><div class="alert">Upstream quota exhausted</div><p>{filler}</p>'
        "</body></html>"
    )

    with pytest.raises(UnrecognizedPage) as excinfo:
        parse_ip_page(html)

    message = excinfo.value.message
    assert 'error message: "Upstream quota exhausted"' in message
    excerpt = message.split('page excerpt: "', 1)[1].rstrip('"')
    assert len(excerpt) == 150
    assert excerpt.endswith("...")


def test_long_unrecognized_page_falls_back_to_title_then_heading() -> None:
    filler = "lorem " * 250

    with pytest.raises(UnrecognizedPage) as excinfo:
        parse_ip_page(f"<html><head><title>Maintenance</title></head><body><p>{filler}</p></body></html>")
    assert 'page title: "Maintenance"' in excinfo.value.message

    with pytest.raises(UnrecognizedPage) as excinfo:
        parse_ip_page(f"<html><head><title>Ping0.cc</title></head><body><h1>Welcome</h1><p>{filler}</p></body></html>")
    assert 'H1 text: "Welcome"' in excinfo.value.message
