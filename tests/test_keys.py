from crmdq.quality.keys import full_name, normalize_domain, normalize_key


def test_normalize_key_strips_punctuation():
    assert normalize_key("  John.Doe+1@Example.COM ") == "john.doe1@example.com"
    assert normalize_key("O'Neil & Sons, Ltd") == "oneil  sons ltd"


def test_normalize_key_keeps_only_plain_spaces():
    assert normalize_key("Acme\tCorp\nInc") == "acmecorpinc"
    assert normalize_key("Acme Corp") == "acme corp"


def test_normalize_key_none_is_empty():
    assert normalize_key(None) == ""
    assert normalize_key("   ") == ""


def test_normalize_domain():
    assert normalize_domain("https://www.Acme.com/") == "acme.com"
    assert normalize_domain("http://acme.com") == "acme.com"
    assert normalize_domain(None) == ""


def test_full_name_skips_missing_parts():
    assert full_name({"firstname": " Jane ", "lastname": "Doe"}) == "Jane Doe"
    assert full_name({"lastname": "Doe"}) == "Doe"
    assert full_name({}) == ""
