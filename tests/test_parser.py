from focused_crawler.crawler.parser import LinkExtractor


def urls(links):
    return [link.url for link in links]


def test_relative_links_are_resolved():
    html = '<a href="b.html">B</a><a href="../c">C</a><a href="//cdn.example/d">D</a>'
    links = LinkExtractor().extract_links("http://example.com/dir/a.html", html)
    assert urls(links) == [
        "http://example.com/dir/b.html",
        "http://example.com/c",
        "http://cdn.example/d",
    ]


def test_base_href_is_honored():
    html = '<head><base href="http://mirror.example/root/"></head><a href="page">P</a>'
    links = LinkExtractor().extract_links("http://example.com/", html)
    assert urls(links) == ["http://mirror.example/root/page"]


def test_skipped_links():
    html = """
    <a href="#top">Top</a>
    <a href="javascript:void(0)">JS</a>
    <a href="mailto:a@example.com">Mail</a>
    <a href="/ad" rel="sponsored nofollow">Ad</a>
    <a href="/file.pdf">PDF</a>
    <a href="ftp://example.com/file">FTP</a>
    <a>No href</a>
    <a href="/kept">Kept</a>
    """
    links = LinkExtractor().extract_links("http://example.com/", html)
    assert urls(links) == ["http://example.com/kept"]


def test_duplicates_and_fragments_collapse():
    html = '<a href="/x#one">First</a><a href="/x#two">Second</a><a href="HTTP://EXAMPLE.COM/x">Third</a>'
    links = LinkExtractor().extract_links("http://example.com/", html)
    assert len(links) == 1
    assert links[0].anchor_text == "First"


def test_anchor_text_whitespace_is_collapsed():
    html = '<a href="/x">  Deep\n\t<b>learning</b>   guide </a>'
    [link] = LinkExtractor().extract_links("http://example.com/", html)
    assert link.anchor_text == "Deep learning guide"


def test_domain_filters():
    html = '<a href="http://good.example/1">1</a><a href="http://bad.example/2">2</a>' \
           '<a href="http://elsewhere.example/3">3</a>'
    extractor = LinkExtractor(allowed_domains=["good.example", "bad.example"],
                              blocked_domains=["bad.example"])
    assert urls(extractor.extract_links("http://good.example/", html)) == ["http://good.example/1"]


def test_empty_document():
    assert LinkExtractor().extract_links("http://example.com/", "") == []
