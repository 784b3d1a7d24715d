import dataclasses

import pytest
from bs4 import BeautifulSoup

import linkjuice
from linkjuice import AnchorLink, AnnotationConfig, annotate_html, init, inner_html


def soup_of(html):
    return BeautifulSoup(html, "html.parser")


def test_headings_with_ids_link_to_themselves():
    soup = soup_of(
        '<div class="post">'
        '<h2 id="one">One</h2><p>text</p><h3 id="two">Two <em>b</em></h3><h4 id="three">Three</h4>'
        "</div>"
    )
    init(soup, ".post")

    for heading_id, original in (("one", "One"), ("two", "Two <em>b</em>"), ("three", "Three")):
        content = soup.find(id=heading_id).decode_contents()
        assert f'href="#{heading_id}"' in content
        assert original in content


def test_heading_without_id_is_untouched_and_reported(capsys):
    soup = soup_of('<div id="root"><h2 id="intro">Intro</h2><h2>NoId</h2></div>')
    init(soup, "#root", {"selectors": ["h2"]})

    intro = soup.find(id="intro").decode_contents()
    assert 'href="#intro"' in intro
    assert "Intro" in intro

    untouched = soup.find_all("h2")[1]
    assert str(untouched) == "<h2>NoId</h2>"

    err = capsys.readouterr().err
    assert err.count("WARNING: No ID for element") == 1
    assert "<h2>NoId</h2>" in err


def test_empty_id_counts_as_missing(capsys):
    soup = soup_of('<main><h2 id="">Empty</h2></main>')
    init(soup, "main")

    assert str(soup.h2) == '<h2 id="">Empty</h2>'
    assert capsys.readouterr().err.count("WARNING") == 1


def test_missing_root_is_a_no_op(capsys):
    html = '<div class="other"><h2>NoId</h2><h2 id="a">A</h2></div>'
    soup = soup_of(html)
    init(soup, ".single__content")

    assert str(soup) == html
    assert capsys.readouterr().err == ""


def test_only_configured_selectors_are_annotated():
    soup = soup_of('<div id="c"><h2 id="a">A</h2><h3 id="b">B</h3><h4 id="d">D</h4></div>')
    init(soup, "#c", {"selectors": ["h2", "h4"]})

    assert str(soup.find(id="b")) == '<h3 id="b">B</h3>'
    assert soup.find(id="a").a is not None
    assert soup.find(id="d").a is not None


def test_not_selector_excludes_author_heading():
    soup = soup_of(
        '<div class="single__content">'
        '<h3 id="sec">Section</h3><h3 id="me" class="single__author-name">Me</h3>'
        "</div>"
    )
    init(soup, ".single__content", {"selectors": ["h2", "h3:not(.single__author-name)"]})

    assert soup.find(id="sec").a["href"] == "#sec"
    assert soup.find(id="me").a is None


def test_headings_outside_root_are_ignored():
    soup = soup_of('<h2 id="title">Title</h2><article><h2 id="in">In</h2></article>')
    init(soup, "article")

    assert soup.find(id="title").a is None
    assert soup.find(id="in").a is not None


def test_default_link_shape_and_icon():
    soup = soup_of('<div id="r"><h2 id="intro">Intro</h2></div>')
    init(soup, "#r", {"icon": "&para;"})

    link = soup.find(id="intro").a
    assert link["class"] == ["linkjuice"]
    assert link["href"] == "#intro"
    assert link.find("span", class_="linkjuice-icon").get_text() == "¶"
    assert link.get_text().endswith("Intro")


def test_default_icon_is_hash():
    assert AnnotationConfig().icon == "#"
    assert AnnotationConfig().selectors == ("h1", "h2", "h3", "h4", "h5", "h6")
    html = annotate_html('<div id="r"><h5 id="x">X</h5></div>', "#r")
    assert '<span class="linkjuice-icon">#</span>' in html


def test_custom_content_builder_replaces_default():
    def build(node):
        return f'<a class="anchor" href="#{node["id"]}">§</a> {inner_html(node)}'

    soup = soup_of('<div id="r"><h2 id="intro">Intro</h2></div>')
    init(soup, "#r", AnnotationConfig(selectors=("h2",), content_fn=build))

    heading = soup.find(id="intro")
    assert heading.a["class"] == ["anchor"]
    assert heading.find(class_="linkjuice") is None
    assert "Intro" in heading.decode_contents()


def test_contentFn_option_name_is_accepted():
    cfg = AnnotationConfig.from_options({"contentFn": lambda node: "x", "selectors": "h2"})
    assert cfg.selectors == ("h2",)
    assert cfg.builder(None) == "x"


def test_diagnostics_are_reported_last_heading_first(capsys):
    soup = soup_of('<div id="r"><h2>First</h2><h3>Second</h3></div>')
    init(soup, "#r")

    lines = capsys.readouterr().err.splitlines()
    assert len(lines) == 2
    assert "Second" in lines[0]
    assert "First" in lines[1]


def test_second_call_wraps_again():
    soup = soup_of('<div id="r"><h2 id="a">A</h2></div>')
    init(soup, "#r")
    init(soup, "#r")

    assert len(soup.find(id="a").find_all("a", class_="linkjuice")) == 2


def test_config_is_immutable():
    cfg = AnnotationConfig()
    with pytest.raises(dataclasses.FrozenInstanceError):
        cfg.icon = "x"


def test_anchor_link_builder():
    node = soup_of('<h2 id="n">Hi <b>there</b></h2>').h2
    assert AnchorLink("@")(node) == (
        '<a class="linkjuice" href="#n"><span class="linkjuice-icon">@</span>Hi <b>there</b></a>'
    )


def test_wrap_node_reports_skip():
    node = soup_of("<h2>x</h2>").h2
    assert linkjuice.wrap_node(node, AnchorLink()) is False


def test_id_with_quote_links_to_itself():
    soup = soup_of("<div id=\"r\"><h2 id='say\"hi'>T</h2></div>")
    init(soup, "#r")

    heading = soup.find("h2")
    assert heading["id"] == 'say"hi'
    assert heading.a["href"] == '#say"hi'


def test_entity_like_id_links_to_itself():
    soup = soup_of('<div id="r"><h2 id="&amp;lt;">T</h2></div>')
    init(soup, "#r")

    heading = soup.find("h2")
    assert heading["id"] == "&lt;"
    assert heading.a["href"] == "#&lt;"
