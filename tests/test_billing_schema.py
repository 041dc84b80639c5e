"""
Tests for billing profile validation:
- CPF and CNPJ check digits
- Brazilian phone numbers (landline and mobile)
- BillingProfileUpdate normalizes formatted input to digits
"""
import pytest
from pydantic import ValidationError

from schemas.billing_schema import (
    BillingProfileUpdate,
    is_valid_brazil_phone,
    is_valid_cnpj,
    is_valid_cpf,
    is_valid_cpf_or_cnpj,
    only_digits,
)


def test_only_digits():
    assert only_digits("11.222.333/0001-81") == "11222333000181"
    assert only_digits(None) == ""
    assert only_digits("\u0661\u0662-34") == "34"


def test_cpf_check_digits():
    assert is_valid_cpf("52998224725")
    assert not is_valid_cpf("52998224724")
    assert not is_valid_cpf("11111111111")
    assert not is_valid_cpf("5299822472")


def test_cnpj_check_digits():
    assert is_valid_cnpj("11222333000181")
    assert not is_valid_cnpj("11222333000182")
    assert not is_valid_cnpj("00000000000000")


def test_cpf_or_cnpj_dispatches_on_length():
    assert is_valid_cpf_or_cnpj("52998224725")
    assert is_valid_cpf_or_cnpj("11222333000181")
    assert not is_valid_cpf_or_cnpj("123456789")


def test_brazil_phone_numbers():
    assert is_valid_brazil_phone("11987654321")
    assert is_valid_brazil_phone("1133334444")
    assert not is_valid_brazil_phone("11887654321")  # mobile must start with 9
    assert not is_valid_brazil_phone("1163334444")  # landline starts with 2-5
    assert not is_valid_brazil_phone("10987654321")  # DDD below 11
    assert not is_valid_brazil_phone("99999999999")


def test_profile_update_normalizes_formatting():
    profile = BillingProfileUpdate(
        billing_name="  Acme LTDA ",
        billing_cellphone="(11) 98765-4321",
        billing_tax_id="11.222.333/0001-81",
    )
    assert profile.billing_name == "Acme LTDA"
    assert profile.billing_cellphone == "11987654321"
    assert profile.billing_tax_id == "11222333000181"


@pytest.mark.parametrize("field, value", [
    ("billing_name", " "),
    ("billing_cellphone", "12345"),
    ("billing_tax_id", "111.111.111-11"),
])
def test_profile_update_rejects_invalid_fields(field, value):
    data = {
        "billing_name": "Acme LTDA",
        "billing_cellphone": "11987654321",
        "billing_tax_id": "52998224725",
    }
    data[field] = value
    with pytest.raises(ValidationError):
        BillingProfileUpdate(**data)
