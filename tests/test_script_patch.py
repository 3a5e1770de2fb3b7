from pong0.workflows.script_patch import PATCH_SET_VERSION, find_residual_risks, patch_script

VENDOR_SNIPPET = (
    "function go(u){window.location.href = u;}"
    "function again(){window.location.reload();}"
    "function swap(u){window.location.replace(u);}"
    "function jump(u){window.location.assign(u);}"
    "function pop(u){window.open(u);}"
    "b.load().then(_0x2e2663 => _0x2e2663.detect()).then(_0x465ba0 => {"
    "if (_0x465ba0.bot === false) { document.cookie = 'pow=' + solve(); }"
    "});"
)


def test_patch_disarms_known_call_shapes() -> None:
    report = patch_script(VENDOR_SNIPPET)

    assert "window.location.href" not in report.text
    assert "window.location.reload()" not in report.text
    assert "window.location.replace(" not in report.text
    assert "window.location.assign(" not in report.text
    assert "window.open(" not in report.text
    assert "console.log('[sandbox] blocked redirect to', u)" in report.text
    assert report.applied["href_assign"] == 1
    assert report.applied["window_open"] == 1
    assert report.version == PATCH_SET_VERSION


def test_patch_forces_not_a_bot_branch() -> None:
    report = patch_script(VENDOR_SNIPPET)

    assert "Promise.resolve({bot: false}).then(_0x465ba0 => {" in report.text
    assert "if (true) { document.cookie = 'pow=' + solve(); }" in report.text
    assert report.applied["bot_detect"] == 1
    assert report.applied["bot_branch"] == 1
    assert report.residual == []


def test_unmatched_side_effects_are_reported() -> None:
    text = "top.location.href = '/x'; location = '/y';"

    report = patch_script(text)

    assert report.total_applied == 0
    assert "top_navigation" in report.residual
    assert "location_assign" in report.residual


def test_clean_script_has_no_residual_risk() -> None:
    assert find_residual_risks("var a = location.hostname === 'ping0.cc';") == []
