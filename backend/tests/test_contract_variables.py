"""Template variable resolution: vocabulary, formatting, escaping, unknown tokens."""
from datetime import date
from decimal import Decimal

from models import BusinessSnapshot, ClientSnapshot, LeadSnapshot, PaymentTerms, ProductLine
from services.contract_variables import (
    NO_ITEMS_MARKER,
    find_unresolved,
    format_currency,
    format_percent,
    resolve,
)


def _business(**overrides):
    data = dict(
        business_name="Studio Luz",
        person_type="company",
        individual_tax_id="123.456.789-00",
        company_tax_id="12.345.678/0001-90",
        address="Rua das Flores, 100",
        city="Campinas",
        state="SP",
        zip_code="13000-000",
    )
    data.update(overrides)
    return BusinessSnapshot(**data)


def _quote(**overrides):
    data = dict(
        client_name="Maria Souza",
        event_type="Wedding",
        event_date=date(2024, 6, 15),
        event_city="Campinas",
        products=[ProductLine(name="Album", unit_price=Decimal("1234.5"), quantity=2)],
        subtotal=Decimal("2469.00"),
        coupon_discount=Decimal("69.00"),
        payment_surcharge_percent=Decimal("2.5"),
        total_value=Decimal("2400.00"),
        payment_method_name="Pix",
    )
    data.update(overrides)
    return LeadSnapshot(**data)


class TestFormatting:
    def test_currency(self):
        assert format_currency(Decimal("1234567.891")) == "R$ 1.234.567,89"
        assert format_currency(0) == "R$ 0,00"
        assert format_currency(Decimal("-5")) == "-R$ 5,00"

    def test_percent(self):
        assert format_percent(Decimal("2.50")) == "2,5%"
        assert format_percent(Decimal("10")) == "10%"


class TestResolve:
    def test_business_client_quote_tokens(self):
        text = resolve(
            "{{business_name}} ({{business_tax_id}}) / {{client_name}} / {{event_type}} on {{event_date}} in {{event_city}}: {{total_value}}",
            _business(),
            None,
            _quote(),
        )
        assert text == "Studio Luz (12.345.678/0001-90) / Maria Souza / Wedding on 15/06/2024 in Campinas: R$ 2.400,00"

    def test_individual_uses_individual_tax_id(self):
        assert resolve("{{business_tax_id}}", _business(person_type="individual"), None, _quote()) == "123.456.789-00"

    def test_full_address(self):
        text = resolve("{{business_full_address}}", _business(), None, _quote())
        assert text == "Rua das Flores, 100, Campinas - SP, 13000-000"

    def test_client_snapshot_wins_over_quote(self):
        client = ClientSnapshot(full_name="Maria S. Lima", tax_id="987.654.321-00", address="Av. Brasil, 1")
        text = resolve("{{client_name}}|{{client_tax_id}}|{{client_address}}", _business(), client, _quote())
        assert text == "Maria S. Lima|987.654.321-00|Av. Brasil, 1"

    def test_unknown_tokens_left_verbatim(self):
        text = resolve("Hello {{client_name}} {{not_a_variable}}", _business(), None, _quote())
        assert text == "Hello Maria Souza {{not_a_variable}}"

    def test_unbound_tokens_left_verbatim(self):
        # No client snapshot yet: tax id is unknown until the client fills the form
        text = resolve("CPF: {{client_tax_id}}", _business(), None, _quote())
        assert text == "CPF: {{client_tax_id}}"
        assert find_unresolved(text) == ["client_tax_id"]

    def test_whitespace_inside_braces(self):
        assert resolve("{{ client_name }}", _business(), None, _quote()) == "Maria Souza"

    def test_values_are_html_escaped(self):
        client = ClientSnapshot(full_name="<script>alert(1)</script>")
        text = resolve("<p>{{client_name}}</p>", _business(), client, _quote())
        assert "<script>" not in text
        assert "&lt;script&gt;" in text

    def test_idempotent(self):
        template = "{{client_name}} {{unknown}} {{products_list}}"
        first = resolve(template, _business(), None, _quote())
        assert resolve(first, _business(), None, _quote()) == first

    def test_current_date_from_reference(self):
        assert resolve("{{current_date}}", _business(), None, _quote(), reference_date=date(2024, 3, 1)) == "01/03/2024"
        assert resolve("{{current_date}}", _business(), None, _quote()) == "{{current_date}}"


class TestProductsAndTerms:
    def test_products_list(self):
        text = resolve("{{products_list}}", _business(), None, _quote())
        assert text.startswith('<ul class="contract-products">')
        assert "Album - 2 x R$ 1.234,50 = R$ 2.469,00" in text

    def test_empty_selection_renders_marker(self):
        assert resolve("{{products_list}}", _business(), None, _quote(products=[])) == NO_ITEMS_MARKER

    def test_payment_terms(self):
        terms = PaymentTerms(name="Pix", down_payment_mode="percent", down_payment_amount=Decimal("30"), installment_count=3)
        text = resolve("{{payment_terms}}", _business(), None, _quote(total_value=Decimal("1000"), payment_details=terms))
        assert "Down payment of R$ 300,00 (30%) on signing" in text
        assert "3 monthly installments of R$ 233,33, the last one R$ 233,34" in text

    def test_payment_terms_without_details_unbound(self):
        assert resolve("{{payment_terms}}", _business(), None, _quote()) == "{{payment_terms}}"

    def test_hide_intermediate_values(self):
        quote = _quote(hide_intermediate_values=True)
        text = resolve("[{{subtotal}}][{{coupon_discount}}][{{payment_surcharge}}] {{total_value}} {{products_list}}",
                       _business(), None, quote)
        assert text.startswith("[][][] R$ 2.400,00")
        assert "Album (x2)" in text
        assert "1.234,50" not in text
