import pytest

from rulesets import normalize
from rulesets.normalize import normalize_domain, normalize_ip


SAMPLE = (
    "# Title: sample list\n"
    "#\n"
    "   \n"
    "  # Updated: today\n"
    "example.com\n"
    "# mid-file comment\n"
    "1.2.3.4\n"
    "   # indented mid-file comment\n"
    ".example.org:443 # trailing note\n"
    "bad..domain\n"
)
HEADERS = ["# Title: sample list", "#", "  # Updated: today"]


# ----------------------------------------
# Domain normalizer
# ----------------------------------------
@pytest.mark.parametrize(
    "token, expected",
    [
        ("example.com", "+.example.com"),
        (".example.com", "+.example.com"),
        ("org", "+.org"),
        (".org", "+.org"),
        ("example.com:443", "+.example.com"),
        (".example.com:443", "+.example.com"),
        ("sub-domain.Example.co.uk", "+.sub-domain.Example.co.uk"),
        ("123abc.net", "+.123abc.net"),
    ],
)
def test_normalize_domain_accepts(token: str, expected: str) -> None:
    assert normalize_domain(token) == expected


@pytest.mark.parametrize(
    "token",
    [
        "",
        ".",
        "1.2.3.4",
        ".1.2.3.4",
        "1.2.3.4:80",
        "123",
        "example..com",
        "..example.com",
        "example.com.",
        "example.com:",
        "/malware.rar",
        "example.com/malware.rar",
        "exa_mple.com",
        "пример.рф",
        "[2001:db8::1]",
    ],
)
def test_normalize_domain_rejects(token: str) -> None:
    assert normalize_domain(token) is None


def test_normalize_domain_is_idempotent_on_host() -> None:
    for token in ("example.com", ".example.com", "org", "a-b.c-d.example"):
        rule = normalize_domain(token)
        assert normalize_domain(rule[2:]) == rule


# ----------------------------------------
# IP normalizer
# ----------------------------------------
@pytest.mark.parametrize(
    "token, expected",
    [
        ("1.2.3.4", "1.2.3.4/32"),
        ("1.2.3.4/24", "1.2.3.4/24"),
        ("1.2.3.4/0", "1.2.3.4/0"),
        ("1.2.3.4/32", "1.2.3.4/32"),
        ("1.2.3.4/024", "1.2.3.4/24"),
        ("1.2.3.4:8080", "1.2.3.4/32"),
        ("1.2.3.4:8080/24", "1.2.3.4/24"),
        ("999.1.1.1", "999.1.1.1/32"),
        ("[2001:db8::1]:443", "2001:db8::1/128"),
        ("[2001:db8::1]/64", "2001:db8::1/64"),
        ("[2001:db8::]:443/32", "2001:db8::/32"),
        ("2001:db8::/32", "2001:db8::/32"),
        ("2001:db8::1", "2001:db8::1/128"),
        ("::1", "::1/128"),
        ("::/0", "::/0"),
    ],
)
def test_normalize_ip_accepts(token: str, expected: str) -> None:
    assert normalize_ip(token) == expected


@pytest.mark.parametrize(
    "token",
    [
        "",
        "1.2.3.4/33",
        "1.2.3.4/24:8080",
        "1.2.3.4:",
        "1.2.3.4/",
        "1.2.3.4abc",
        "1.2.3.4.5",
        "1.2.3",
        "123",
        "deadbeef",
        "example.com",
        "2001:db8::/129",
        "[2001:db8::1]:443:80",
        "[zz::1]",
        "abc:80",
        "fe80::1%eth0",
    ],
)
def test_normalize_ip_rejects(token: str) -> None:
    assert normalize_ip(token) is None


def test_normalize_ip_ipv4_only() -> None:
    assert normalize_ip("1.2.3.4/8", allow_ipv6=False) == "1.2.3.4/8"
    assert normalize_ip("2001:db8::1", allow_ipv6=False) is None
    assert normalize_ip("[2001:db8::1]:443", allow_ipv6=False) is None


@pytest.mark.parametrize("prefix", [0, 1, 16, 31, 32])
def test_ipv4_prefix_range(prefix: int) -> None:
    assert normalize_ip(f"10.0.0.0/{prefix}") == f"10.0.0.0/{prefix}"


def test_overlong_prefix_is_rejected_without_aborting_stream() -> None:
    assert normalize_ip("1.2.3.4/" + "1" * 5000) is None
    assert normalize_ip("1.2.3.4/0024") == "1.2.3.4/24"
    text = "1.2.3.4/" + "1" * 5000 + "\n5.6.7.8\n"
    assert normalize.normalize_text(text, normalize.IP) == {"ip": ["5.6.7.8/32"]}


def test_zero_padded_prefix_is_zero() -> None:
    text = "1.2.3.4/" + "0" * 5000 + "\nexample.com\n"
    result = normalize.normalize_text(text, normalize.MIXED)
    assert result == {"domain": ["+.example.com"], "ip": ["1.2.3.4/0"]}
    assert normalize_ip("[2001:db8::]/" + "0" * 5000 + "64") == "2001:db8::/64"


def test_grammars_do_not_overlap() -> None:
    for token in ("1.2.3.4", "example.com", "2001:db8::1", "org", "123", "10.0.0.0/8"):
        assert normalize_domain(token) is None or normalize_ip(token) is None


# ----------------------------------------
# Stream driver
# ----------------------------------------
def test_domain_mode_preserves_headers_and_order() -> None:
    stats: dict = {}
    result = normalize.normalize_text(SAMPLE, normalize.DOMAIN, stats=stats)
    assert result == {"domain": HEADERS + ["+.example.com", "+.example.org"]}
    assert stats["lines_in"] == 10
    assert stats["headers_kept"] == 3
    assert stats["blank_dropped"] == 1
    assert stats["comments_dropped"] == 2
    assert stats["data_lines"] == 4
    assert stats["domain_out"] == 2
    assert stats["ip_out"] == 0
    assert stats["rejected"] == 2


def test_ip_mode() -> None:
    result = normalize.normalize_text(SAMPLE, normalize.IP)
    assert result == {"ip": HEADERS + ["1.2.3.4/32"]}


def test_mixed_mode_splits_lines_and_copies_headers() -> None:
    stats: dict = {}
    result = normalize.normalize_text(SAMPLE, normalize.MIXED, stats=stats)
    assert result["domain"] == HEADERS + ["+.example.com", "+.example.org"]
    assert result["ip"] == HEADERS + ["1.2.3.4/32"]
    assert stats["domain_out"] == 2
    assert stats["ip_out"] == 1
    assert stats["rejected"] == 1


def test_mixed_mode_headers_domain_only() -> None:
    result = normalize.normalize_text(
        SAMPLE, normalize.MIXED, mixed_headers=normalize.HEADERS_DOMAIN
    )
    assert result["domain"][:3] == HEADERS
    assert result["ip"] == ["1.2.3.4/32"]


def test_comment_after_rejected_data_line_is_dropped() -> None:
    text = "# head\n!! not a host\n# after\nexample.com\n# tail\n"
    assert normalize.normalize_text(text)["domain"] == ["# head", "+.example.com"]


def test_only_first_column_is_used() -> None:
    text = "0.0.0.0 ads.example.com\nads.example.com 0.0.0.0\n"
    assert normalize.normalize_text(text)["domain"] == ["+.ads.example.com"]
    assert normalize.normalize_text(text, normalize.IP)["ip"] == ["0.0.0.0/32"]


def test_custom_separator() -> None:
    text = "example.com,1.2.3.4 with spaces\n 1.2.3.0/24 ,note\nbad domain,x\n"
    result = normalize.normalize_text(text, normalize.MIXED, ",")
    assert result == {"domain": ["+.example.com"], "ip": ["1.2.3.0/24"]}


def test_windows_line_endings() -> None:
    text = "# head\r\nexample.com\r\n1.2.3.4\r\n"
    result = normalize.normalize_text(text, normalize.MIXED)
    assert result == {
        "domain": ["# head", "+.example.com"],
        "ip": ["# head", "1.2.3.4/32"],
    }


def test_configuration_errors_raise_before_reading() -> None:
    def _lines():
        raise AssertionError("input must not be read")
        yield ""  # pragma: no cover

    with pytest.raises(ValueError):
        normalize.iter_rules(_lines(), "bogus")
    with pytest.raises(ValueError):
        normalize.iter_rules(_lines(), normalize.DOMAIN, "")
    with pytest.raises(ValueError):
        normalize.iter_rules(_lines(), normalize.MIXED, mixed_headers="ip")


def test_normalize_stream_requires_all_outputs() -> None:
    import io

    with pytest.raises(ValueError):
        normalize.normalize_stream(["example.com"], {"domain": io.StringIO()}, normalize.MIXED)


# ----------------------------------------
# Files & CLI
# ----------------------------------------
def test_process_file_mixed(tmp_path) -> None:
    src = tmp_path / "list.txt"
    src.write_text(SAMPLE, encoding="utf-8")
    dom, ip = tmp_path / "out" / "d.txt", tmp_path / "out" / "i.txt"

    stats = normalize.process_file(src, {"domain": dom, "ip": ip}, normalize.MIXED)

    assert dom.read_text(encoding="utf-8").splitlines() == HEADERS + [
        "+.example.com",
        "+.example.org",
    ]
    assert ip.read_text(encoding="utf-8") == "\n".join(HEADERS + ["1.2.3.4/32"]) + "\n"
    assert stats["in_path"] == str(src)
    assert stats["data_lines"] == 4


def test_process_file_missing_input_keeps_output(tmp_path) -> None:
    out = tmp_path / "out.txt"
    out.write_text("+.old.example\n", encoding="utf-8")
    with pytest.raises(FileNotFoundError):
        normalize.process_file(tmp_path / "missing.txt", {"domain": out})
    assert out.read_text(encoding="utf-8") == "+.old.example\n"


def test_transform_directory(tmp_path) -> None:
    inp = tmp_path / "in"
    inp.mkdir()
    (inp / "a.txt").write_text("a.example\n1.1.1.1\n", encoding="utf-8")
    (inp / "b.txt").write_text("# b\nb.example\n", encoding="utf-8")
    (inp / "skip.md").write_text("c.example\n", encoding="utf-8")

    stats = normalize.transform(inp, tmp_path / "out", normalize.DOMAIN, parallel=False)

    assert len(stats) == 2
    assert (tmp_path / "out" / "a.txt").read_text(encoding="utf-8") == "+.a.example\n"
    assert (tmp_path / "out" / "b.txt").read_text(encoding="utf-8") == "# b\n+.b.example\n"
    assert not (tmp_path / "out" / "skip.md").exists()


def test_transform_mixed_requires_ip_output(tmp_path) -> None:
    src = tmp_path / "a.txt"
    src.write_text("a.example\n", encoding="utf-8")
    with pytest.raises(ValueError):
        normalize.transform(src, tmp_path / "d.txt", normalize.MIXED)


def test_main_writes_files(tmp_path) -> None:
    src = tmp_path / "list.txt"
    src.write_text("example.com;1\n10.0.0.0/8;2\n", encoding="utf-8")
    dom, ip = tmp_path / "d.txt", tmp_path / "i.txt"

    rc = normalize.main(["mixed", str(src), str(dom), str(ip), "--sep", ";", "--no-parallel"])

    assert rc == 0
    assert dom.read_text(encoding="utf-8") == "+.example.com\n"
    assert ip.read_text(encoding="utf-8") == "10.0.0.0/8\n"


def test_main_stdout(tmp_path, capsys) -> None:
    src = tmp_path / "list.txt"
    src.write_text("# head\n2001:db8::1\n1.2.3.4:53\n", encoding="utf-8")

    rc = normalize.main(["ip", str(src), "-", "--ipv4-only"])

    assert rc == 0
    assert capsys.readouterr().out == "# head\n1.2.3.4/32\n"


def test_main_rejects_bad_separator(tmp_path) -> None:
    src = tmp_path / "list.txt"
    src.write_text("example.com\n", encoding="utf-8")
    with pytest.raises(SystemExit) as exc:
        normalize.main(["domain", str(src), str(tmp_path / "o.txt"), "--sep", "["])
    assert exc.value.code == 2
    assert not (tmp_path / "o.txt").exists()


def test_main_missing_input_fails(tmp_path) -> None:
    assert normalize.main(["domain", str(tmp_path / "nope.txt"), str(tmp_path / "o.txt")]) == 1
