from pgsandbox.identifier import quote_identifier, quote_qualified_name


def test_empty_identifier():
    assert quote_identifier("") == '""'


def test_simple_identifier():
    assert quote_identifier("public") == '"public"'


def test_identifier_with_space():
    assert quote_identifier("schema name") == '"schema name"'


def test_embedded_quotes_are_doubled():
    assert quote_identifier('a"b') == '"a""b"'


def test_qualified_name():
    assert quote_qualified_name("public", "pgtest_table") == '"public"."pgtest_table"'


def test_qualified_name_composes_quote_identifier():
    schema, table = 'we"ird', "t t"
    assert quote_qualified_name(schema, table) == (
        quote_identifier(schema) + "." + quote_identifier(table)
    )