"""Tests for the invoice payload format "<giftId>:<buyerId>" and gift ids."""

import pytest

from api.services.settlement_engine import (
    InvalidPayloadError,
    PaymentConfirmation,
    PreCheckoutQuery,
    build_invoice_payload,
    generate_gift_id,
    parse_invoice_payload,
    validate_id,
)


class TestBuildPayload:
    
    def test_format(self):
        assert build_invoice_payload("g1", "u2") == "g1:u2"
    
    def test_rejects_separator_in_ids(self):
        with pytest.raises(InvalidPayloadError):
            build_invoice_payload("g:1", "u2")
        with pytest.raises(InvalidPayloadError):
            build_invoice_payload("g1", "u:2")
    
    def test_rejects_empty_ids(self):
        with pytest.raises(InvalidPayloadError):
            build_invoice_payload("", "u2")


class TestParsePayload:
    
    def test_parse(self):
        assert parse_invoice_payload("g1:u2") == ("g1", "u2")
    
    def test_parses_generated_ids(self):
        gift_id = generate_gift_id()
        assert parse_invoice_payload(build_invoice_payload(gift_id, "12345")) == (gift_id, "12345")
    
    @pytest.mark.parametrize("payload", ["g1u2", "", "g1:", ":u2", "g1:u2:extra", None])
    def test_malformed(self, payload):
        with pytest.raises(InvalidPayloadError):
            parse_invoice_payload(payload)


class TestGiftIds:
    
    def test_generated_ids_are_unique_and_delimiter_free(self):
        ids = {generate_gift_id() for _ in range(200)}
        assert len(ids) == 200
        for gift_id in ids:
            assert gift_id.startswith("gift-")
            assert validate_id(gift_id) == gift_id


class TestUpdateParsing:
    """Extracting confirmations and pre-checkout queries from Telegram updates."""
    
    def test_successful_payment(self):
        update = {
            "update_id": 1,
            "message": {
                "chat": {"id": 200},
                "successful_payment": {
                    "currency": "RUB",
                    "total_amount": 1560,
                    "invoice_payload": "g1:200",
                    "telegram_payment_charge_id": "tg-1",
                    "provider_payment_charge_id": "pr-1",
                },
            },
        }
        confirmation = PaymentConfirmation.from_update(update)
        assert confirmation.invoice_payload == "g1:200"
        assert confirmation.chat_id == "200"
        assert confirmation.total_amount == 1560
        assert confirmation.telegram_payment_charge_id == "tg-1"
    
    def test_plain_message_is_not_a_confirmation(self):
        assert PaymentConfirmation.from_update({"message": {"text": "hi", "chat": {"id": 1}}}) is None
        assert PaymentConfirmation.from_update({}) is None
    
    def test_missing_payload_becomes_empty(self):
        confirmation = PaymentConfirmation.from_update({"message": {"successful_payment": {}}})
        assert confirmation.invoice_payload == ""
    
    def test_pre_checkout_query(self):
        query = PreCheckoutQuery.from_update({
            "pre_checkout_query": {
                "id": "q1",
                "from": {"id": 200},
                "currency": "RUB",
                "total_amount": 1560,
                "invoice_payload": "g1:200",
            }
        })
        assert query.id == "q1"
        assert query.from_id == "200"
        assert query.invoice_payload == "g1:200"
