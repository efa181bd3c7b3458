import pytest
from contextlib import contextmanager
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import Mock, patch

import requests
import stripe
from sqlalchemy import event

from core.payment_config import PaymentConfig, SSLCommerzConfig, ShurjoPayConfig, StripeConfig
from models.invoice import Invoice
from models.payment import Payment
from services.errors import (
    ConfigurationError,
    ConflictError,
    NotFoundError,
    ProviderError,
    ProviderTimeoutError,
    SignatureError,
    ValidationError,
)
from services.gateways.registry import build_registry
from services.gateways.sslcommerz import compute_signature
from services.payment_orchestrator import PaymentOrchestrator

CUSTOMER = {"name": "Rahim Uddin", "phone": "01700000000", "email": "rahim@example.com"}
SSL_PASSWORD = "teststore@ssl"


def _response(payload):
    resp = Mock()
    resp.json.return_value = payload
    resp.raise_for_status.return_value = None
    return resp


def _intent(status, intent_id="pi_123"):
    return SimpleNamespace(
        id=intent_id,
        client_secret=f"{intent_id}_secret",
        status=status,
        amount=2000,
        currency="usd",
        payment_method="pm_card",
        latest_charge=None,
    )


def _ssl_payload(tran_id, status="VALID", amount="1500.00", **extra):
    fields = {"tran_id": tran_id, "status": status, "amount": amount, "currency": "BDT", "bank_tran_id": "BANK1"}
    fields.update(extra)
    verify_key = ",".join(fields)
    return dict(fields, verify_key=verify_key, verify_sign=compute_signature(fields, verify_key, SSL_PASSWORD))


@contextmanager
def record_writes(db):
    statements = []
    engine = db.get_bind()

    def _record(conn, cursor, statement, parameters, context, executemany):
        statements.append(statement)

    event.listen(engine, "before_cursor_execute", _record)
    try:
        yield statements
    finally:
        event.remove(engine, "before_cursor_execute", _record)


def _writes(statements):
    return [s for s in statements if s.lstrip().split()[0].upper() in ("INSERT", "UPDATE", "DELETE")]


@pytest.fixture
def start_ssl(orchestrator):
    def _start(invoice, session_key="SESS1"):
        answer = {"status": "SUCCESS", "sessionkey": session_key, "GatewayPageURL": "https://sandbox.sslcommerz.com/pay"}
        with patch("services.gateways.sslcommerz.requests.post", return_value=_response(answer)):
            return orchestrator.initiate(invoice.id, "ssl_commerz", {"customer_info": CUSTOMER}).payment

    return _start


@pytest.fixture
def start_stripe(orchestrator, stripe_client):
    def _start(invoice, intent_id="pi_123"):
        with patch.object(stripe_client.v1.payment_intents, "create", return_value=_intent("requires_payment_method", intent_id)):
            return orchestrator.initiate(invoice.id, "stripe", {"amount": Decimal("20.00"), "currency": "usd"}).payment

    return _start


class TestInitiate:
    """Test cases for starting a payment"""

    def test_cash_on_delivery_uses_invoice_total(self, orchestrator, db, invoice):
        result = orchestrator.initiate(invoice.id, "cash_on_delivery", {"amount": Decimal("1.00")})
        payment = result.payment

        assert Decimal(str(payment.amount)) == Decimal("1500.00")
        assert payment.status == "pending"
        assert payment.currency == "BDT"
        assert payment.metadata_["note"] == "Payment will be collected upon delivery"
        db.refresh(invoice)
        assert invoice.payment_status == "pending"

    def test_second_initiate_conflicts(self, orchestrator, db, invoice):
        orchestrator.initiate(invoice.id, "cash_on_delivery")
        with pytest.raises(ConflictError):
            orchestrator.initiate(invoice.id, "cash_on_delivery")
        assert db.query(Payment).count() == 1

    def test_failed_attempt_allows_retry(self, orchestrator, db, invoice):
        first = orchestrator.initiate(invoice.id, "cash_on_delivery").payment
        orchestrator.update_status(first.id, "failed", "customer unreachable")
        second = orchestrator.initiate(invoice.id, "cash_on_delivery").payment
        assert second.id != first.id
        assert db.query(Payment).count() == 2

    def test_unknown_method(self, orchestrator, invoice):
        with pytest.raises(ValidationError):
            orchestrator.initiate(invoice.id, "paypal")

    def test_missing_invoice(self, orchestrator):
        with pytest.raises(NotFoundError):
            orchestrator.initiate(404, "cash_on_delivery")

    def test_stripe_unconfigured_persists_nothing(self, db, invoice):
        gateways = build_registry(PaymentConfig(StripeConfig(), SSLCommerzConfig(), ShurjoPayConfig()))
        orchestrator = PaymentOrchestrator(db, gateways)
        with pytest.raises(ConfigurationError):
            orchestrator.initiate(invoice.id, "stripe", {"amount": Decimal("20.00"), "currency": "usd"})
        assert db.query(Payment).count() == 0

    def test_provider_failure_persists_nothing(self, orchestrator, db, invoice):
        rejected = {"status": "FAILED", "failedreason": "Invalid store"}
        with patch("services.gateways.sslcommerz.requests.post", return_value=_response(rejected)):
            with pytest.raises(ProviderError) as exc_info:
                orchestrator.initiate(invoice.id, "ssl_commerz", {"customer_info": CUSTOMER})
        assert exc_info.value.message == "Invalid store"
        assert db.query(Payment).count() == 0

    def test_provider_timeout_is_retryable(self, orchestrator, invoice):
        with patch("services.gateways.sslcommerz.requests.post", side_effect=requests.Timeout("slow")):
            with pytest.raises(ProviderTimeoutError) as exc_info:
                orchestrator.initiate(invoice.id, "ssl_commerz", {"customer_info": CUSTOMER})
        assert exc_info.value.retryable is True

    def test_missing_customer_fields(self, orchestrator, invoice):
        with pytest.raises(ValidationError):
            orchestrator.initiate(invoice.id, "ssl_commerz", {"customer_info": {"name": "Rahim"}})

    def test_ssl_commerz_session_persisted(self, start_ssl, invoice):
        payment = start_ssl(invoice)
        assert payment.transaction_id.startswith("SSL_")
        assert payment.metadata_["session_key"] == "SESS1"
        assert payment.user_id == invoice.user_id

    def test_stripe_intent_persisted(self, start_stripe, invoice):
        payment = start_stripe(invoice)
        assert payment.payment_intent_id == "pi_123"
        assert payment.transaction_id is None
        assert payment.currency == "USD"
        assert Decimal(str(payment.amount)) == Decimal("20.00")
        assert payment.metadata_["stripe_client_secret"] == "pi_123_secret"

    def test_same_invoice_different_methods(self, orchestrator, start_ssl, db, invoice):
        start_ssl(invoice)
        orchestrator.initiate(invoice.id, "cash_on_delivery")
        assert db.query(Payment).count() == 2


class TestCallbacks:
    """Test cases for applying provider outcomes"""

    def test_successful_callback_completes_payment_and_invoice(self, orchestrator, start_ssl, db, invoice, mock_email_send):
        payment = start_ssl(invoice)
        outcome = orchestrator.handle_callback("ssl_commerz", _ssl_payload(payment.transaction_id))

        assert outcome.applied is True
        assert outcome.status == "completed"
        assert payment.payment_date is not None
        assert payment.gateway_response["bank_tran_id"] == "BANK1"
        assert payment.metadata_["session_key"] == "SESS1"
        assert payment.refund_amount is None
        db.refresh(invoice)
        assert invoice.payment_status == "completed"
        assert invoice.status == "confirmed"
        assert len(mock_email_send) == 1
        assert mock_email_send[0]["to"] == "rahim@example.com"
        assert invoice.invoice_number in mock_email_send[0]["body"]

    def test_repeated_callback_is_idempotent(self, orchestrator, start_ssl, db, invoice, mock_email_send):
        payment = start_ssl(invoice)
        payload = _ssl_payload(payment.transaction_id)
        orchestrator.handle_callback("ssl_commerz", payload)
        paid_at = payment.payment_date
        db.refresh(invoice)
        updated_at = invoice.updated_at

        again = orchestrator.handle_ipn("ssl_commerz", payload)
        outcome = orchestrator.handle_callback("ssl_commerz", payload)

        assert again == "OK"
        assert outcome.applied is False
        assert payment.status == "completed"
        assert payment.payment_date == paid_at
        assert payment.refund_amount is None
        db.refresh(invoice)
        assert invoice.updated_at == updated_at
        assert len(mock_email_send) == 1

    def test_bad_signature_leaves_payment_untouched(self, orchestrator, start_ssl, db, invoice):
        payment = start_ssl(invoice)
        payload = _ssl_payload(payment.transaction_id)
        payload["verify_sign"] = "0" * 32

        with pytest.raises(SignatureError):
            orchestrator.handle_callback("ssl_commerz", payload)
        db.refresh(payment)
        assert payment.status == "pending"
        assert payment.failure_reason is None

    def test_unsuccessful_callback_fails_payment(self, orchestrator, start_ssl, db, invoice, mock_email_send):
        payment = start_ssl(invoice)
        outcome = orchestrator.handle_callback("ssl_commerz", _ssl_payload(payment.transaction_id, status="FAILED"))

        assert outcome.applied is True
        assert payment.status == "failed"
        assert payment.failure_reason == "Payment not completed. Status: FAILED"
        db.refresh(invoice)
        assert invoice.payment_status == "pending"
        assert mock_email_send == []

    def test_late_failure_does_not_undo_completion(self, orchestrator, start_ssl, invoice):
        payment = start_ssl(invoice)
        orchestrator.handle_callback("ssl_commerz", _ssl_payload(payment.transaction_id))
        outcome = orchestrator.handle_callback("ssl_commerz", _ssl_payload(payment.transaction_id, status="FAILED"))
        assert outcome.applied is False
        assert payment.status == "completed"

    def test_lookup_by_session_key(self, orchestrator, start_ssl, invoice):
        payment = start_ssl(invoice, session_key="SESS-ALT")
        payload = _ssl_payload("unknown-tran", sessionkey="SESS-ALT")
        outcome = orchestrator.handle_callback("ssl_commerz", payload)
        assert outcome.payment.id == payment.id

    def test_unknown_payment(self, orchestrator):
        with pytest.raises(NotFoundError):
            orchestrator.handle_callback("ssl_commerz", _ssl_payload("SSL_0_0"))

    def test_callback_without_identifier(self, orchestrator):
        with pytest.raises(ValidationError):
            orchestrator.handle_callback("ssl_commerz", {"status": "VALID"})

    def test_ipn_unknown_transaction_acknowledged_without_writes(self, orchestrator, db):
        with record_writes(db) as statements:
            ack = orchestrator.handle_ipn("ssl_commerz", _ssl_payload("SSL_999_999"))
        assert ack == "OK"
        assert _writes(statements) == []

    def test_ipn_bad_signature_rejected(self, orchestrator, start_ssl, invoice):
        payment = start_ssl(invoice)
        payload = _ssl_payload(payment.transaction_id)
        payload["amount"] = "1.00"
        with pytest.raises(SignatureError):
            orchestrator.handle_ipn("ssl_commerz", payload)
        assert payment.status == "pending"

    def test_stripe_confirm_requeries_intent(self, orchestrator, start_stripe, stripe_client, db, invoice, mock_email_send):
        payment = start_stripe(invoice)
        with patch.object(stripe_client.v1.payment_intents, "retrieve", return_value=_intent("succeeded")):
            outcome = orchestrator.handle_callback("stripe", {"payment_intent_id": "pi_123"})

        assert outcome.applied is True
        assert payment.status == "completed"
        assert payment.transaction_id == "pi_123"
        db.refresh(invoice)
        assert invoice.status == "confirmed"
        assert len(mock_email_send) == 1

    def test_stripe_processing(self, orchestrator, start_stripe, stripe_client, invoice):
        payment = start_stripe(invoice)
        with patch.object(stripe_client.v1.payment_intents, "retrieve", return_value=_intent("processing")):
            outcome = orchestrator.handle_callback("stripe", {"payment_intent_id": "pi_123"})
        assert outcome.applied is True
        assert payment.status == "processing"

        with patch.object(stripe_client.v1.payment_intents, "retrieve", return_value=_intent("succeeded")):
            orchestrator.handle_callback("stripe", {"payment_intent_id": "pi_123"})
        assert payment.status == "completed"

    def test_stripe_timeout_leaves_payment_pending(self, orchestrator, start_stripe, stripe_client, invoice):
        payment = start_stripe(invoice)
        with patch.object(stripe_client.v1.payment_intents, "retrieve", side_effect=stripe.APIConnectionError("timeout")):
            with pytest.raises(ProviderTimeoutError):
                orchestrator.handle_callback("stripe", {"payment_intent_id": "pi_123"})
        assert payment.status == "pending"

    def test_stripe_provider_error_fails_payment(self, orchestrator, start_stripe, stripe_client, invoice):
        payment = start_stripe(invoice)
        error = stripe.InvalidRequestError("No such payment_intent: 'pi_123'", param="intent")
        with patch.object(stripe_client.v1.payment_intents, "retrieve", side_effect=error):
            outcome = orchestrator.handle_callback("stripe", {"payment_intent_id": "pi_123"})
        assert outcome.status == "failed"
        assert "No such payment_intent" in payment.failure_reason

    def test_shurjopay_lookup_by_order_id(self, orchestrator, db, invoice):
        token = _response({"token": "tok", "token_type": "Bearer", "store_id": 1})
        checkout = _response({"checkout_url": "https://sp/checkout", "sp_order_id": "SPO-1"})
        with patch("services.gateways.shurjopay.requests.post", side_effect=[token, checkout]):
            payment = orchestrator.initiate(invoice.id, "shurjopay", {"customer_info": CUSTOMER}).payment

        outcome = orchestrator.handle_callback("shurjopay", {
            "sp_order_id": "SPO-1",
            "sp_payment_id": "PAY-9",
            "sp_code": "0000",
            "sp_signature_verify": "true",
        })
        assert outcome.payment.id == payment.id
        assert payment.status == "completed"
        assert payment.metadata_["sp_code"] == "0000"

    def test_shurjopay_unverified_signature_fails(self, orchestrator, invoice):
        token = _response({"token": "tok", "token_type": "Bearer", "store_id": 1})
        checkout = _response({"checkout_url": "https://sp/checkout", "sp_order_id": "SPO-2"})
        with patch("services.gateways.shurjopay.requests.post", side_effect=[token, checkout]):
            payment = orchestrator.initiate(invoice.id, "shurjopay", {"customer_info": CUSTOMER}).payment

        orchestrator.handle_callback("shurjopay", {
            "sp_order_id": "SPO-2",
            "sp_payment_id": "PAY-10",
            "sp_code": "0000",
            "sp_signature_verify": "false",
            "sp_message": "Signature mismatch",
        })
        assert payment.status == "failed"
        assert payment.failure_reason == "Signature mismatch"

    def test_shurjopay_callback_without_payment_id_rejected(self, orchestrator, invoice):
        token = _response({"token": "tok", "token_type": "Bearer", "store_id": 1})
        checkout = _response({"checkout_url": "https://sp/checkout", "sp_order_id": "SPO-3"})
        with patch("services.gateways.shurjopay.requests.post", side_effect=[token, checkout]):
            payment = orchestrator.initiate(invoice.id, "shurjopay", {"customer_info": CUSTOMER}).payment

        with pytest.raises(SignatureError):
            orchestrator.handle_ipn("shurjopay", {"sp_order_id": "SPO-3", "sp_code": "0000"})
        assert payment.status == "pending"

    def test_stripe_rate_limit_leaves_payment_pending(self, orchestrator, start_stripe, stripe_client, invoice):
        payment = start_stripe(invoice)
        with patch.object(stripe_client.v1.payment_intents, "retrieve", side_effect=stripe.RateLimitError("Too many requests")):
            with pytest.raises(ProviderTimeoutError):
                orchestrator.handle_callback("stripe", {"payment_intent_id": "pi_123"})
        assert payment.status == "pending"


class TestRefund:
    """Test cases for refunds"""

    def _completed_ssl(self, orchestrator, start_ssl, invoice):
        payment = start_ssl(invoice)
        orchestrator.handle_callback("ssl_commerz", _ssl_payload(payment.transaction_id))
        return payment

    def test_shurjopay_refund_after_callback(self, orchestrator, db, invoice):
        token = _response({"token": "tok", "token_type": "Bearer", "store_id": 1})
        checkout = _response({"checkout_url": "https://sp/checkout", "sp_order_id": "SPO-4"})
        with patch("services.gateways.shurjopay.requests.post", side_effect=[token, checkout]):
            payment = orchestrator.initiate(invoice.id, "shurjopay", {"customer_info": CUSTOMER}).payment
        orchestrator.handle_callback("shurjopay", {
            "sp_order_id": "SPO-4",
            "sp_payment_id": "PAY-11",
            "sp_code": "0000",
            "sp_signature_verify": "true",
        })
        assert payment.metadata_["sp_payment_id"] == "PAY-11"

        refunded = orchestrator.refund(payment.id, "100.00", "changed mind")

        assert refunded.status == "refunded"
        assert refunded.refund_amount == Decimal("100.00")
        assert refunded.metadata_["refund_id"].startswith("REF_")
        db.refresh(invoice)
        assert invoice.status == "refunded"

    def test_refund_over_amount(self, orchestrator, start_ssl, invoice):
        payment = self._completed_ssl(orchestrator, start_ssl, invoice)
        with pytest.raises(ValidationError):
            orchestrator.refund(payment.id, Decimal("1500.01"))
        assert payment.status == "completed"

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-5")])
    def test_refund_non_positive(self, orchestrator, start_ssl, invoice, amount):
        payment = self._completed_ssl(orchestrator, start_ssl, invoice)
        with pytest.raises(ValidationError):
            orchestrator.refund(payment.id, amount)

    def test_refund_requires_completed(self, orchestrator, start_ssl, invoice):
        payment = start_ssl(invoice)
        with pytest.raises(ValidationError):
            orchestrator.refund(payment.id, Decimal("10"))

    def test_refund_missing_payment(self, orchestrator):
        with pytest.raises(NotFoundError):
            orchestrator.refund(123, Decimal("10"))

    def test_refund_success(self, orchestrator, start_ssl, db, invoice):
        payment = self._completed_ssl(orchestrator, start_ssl, invoice)
        answer = {"APIConnect": "DONE", "status": "success", "refund_ref_id": "RR-1"}
        with patch("services.gateways.sslcommerz.requests.get", return_value=_response(answer)):
            refunded = orchestrator.refund(payment.id, Decimal("1500.00"), "out of stock")

        assert refunded.status == "refunded"
        assert Decimal(str(refunded.refund_amount)) == Decimal("1500.00")
        assert refunded.refunded_at is not None
        assert refunded.metadata_["refund_reason"] == "out of stock"
        assert refunded.metadata_["refund_id"] == "RR-1"
        db.refresh(invoice)
        assert invoice.status == "refunded"

    def test_refund_gateway_failure_keeps_completed(self, orchestrator, start_ssl, db, invoice):
        payment = self._completed_ssl(orchestrator, start_ssl, invoice)
        answer = {"APIConnect": "DONE", "status": "failed", "errorReason": "Already refunded"}
        with patch("services.gateways.sslcommerz.requests.get", return_value=_response(answer)):
            with pytest.raises(ProviderError):
                orchestrator.refund(payment.id, Decimal("100.00"))

        db.refresh(payment)
        assert payment.status == "completed"
        assert payment.refund_amount is None
        db.refresh(invoice)
        assert invoice.status == "confirmed"

    def test_partial_cod_refund(self, orchestrator, invoice):
        payment = orchestrator.initiate(invoice.id, "cash_on_delivery").payment
        orchestrator.update_status(payment.id, "completed")
        refunded = orchestrator.refund(payment.id, Decimal("500"), "damaged item")
        assert refunded.status == "refunded"
        assert refunded.metadata_["refund_id"].startswith("COD_REF_")


class TestStatusOverride:
    """Test cases for operator status changes"""

    def test_complete_cod_on_delivery(self, orchestrator, db, invoice, mock_email_send):
        payment = orchestrator.initiate(invoice.id, "cash_on_delivery").payment
        updated = orchestrator.update_status(payment.id, "completed", "collected by courier")

        assert updated.status == "completed"
        assert updated.payment_date is not None
        assert updated.metadata_["status_note"] == "collected by courier"
        db.refresh(invoice)
        assert invoice.payment_status == "completed"
        assert len(mock_email_send) == 1

    def test_cancel_pending(self, orchestrator, invoice):
        payment = orchestrator.initiate(invoice.id, "cash_on_delivery").payment
        assert orchestrator.update_status(payment.id, "cancelled").status == "cancelled"

    def test_terminal_cannot_move(self, orchestrator, invoice):
        payment = orchestrator.initiate(invoice.id, "cash_on_delivery").payment
        orchestrator.update_status(payment.id, "cancelled")
        with pytest.raises(ConflictError):
            orchestrator.update_status(payment.id, "pending")

    def test_completed_cannot_fail(self, orchestrator, invoice):
        payment = orchestrator.initiate(invoice.id, "cash_on_delivery").payment
        orchestrator.update_status(payment.id, "completed")
        with pytest.raises(ConflictError):
            orchestrator.update_status(payment.id, "failed")

    def test_refunded_only_through_refund(self, orchestrator, invoice):
        payment = orchestrator.initiate(invoice.id, "cash_on_delivery").payment
        with pytest.raises(ValidationError):
            orchestrator.update_status(payment.id, "refunded")

    def test_unknown_status(self, orchestrator, invoice):
        payment = orchestrator.initiate(invoice.id, "cash_on_delivery").payment
        with pytest.raises(ValidationError):
            orchestrator.update_status(payment.id, "lost")

    def test_same_status_records_note(self, orchestrator, invoice):
        payment = orchestrator.initiate(invoice.id, "cash_on_delivery").payment
        updated = orchestrator.update_status(payment.id, "pending", "customer asked to deliver tomorrow")
        assert updated.status == "pending"
        assert updated.metadata_["status_note"] == "customer asked to deliver tomorrow"
        assert updated.metadata_["note"] == "Payment will be collected upon delivery"

    def test_failed_records_reason(self, orchestrator, invoice):
        payment = orchestrator.initiate(invoice.id, "cash_on_delivery").payment
        updated = orchestrator.update_status(payment.id, "failed", "address not found")
        assert updated.failure_reason == "address not found"


class TestQueries:
    """Test cases for payment queries"""

    def test_get_missing(self, orchestrator):
        with pytest.raises(NotFoundError):
            orchestrator.get(1)

    def test_list_and_stats(self, orchestrator, make_invoice, test_user):
        first = orchestrator.initiate(make_invoice().id, "cash_on_delivery").payment
        orchestrator.initiate(make_invoice(total="500.00").id, "cash_on_delivery")
        orchestrator.update_status(first.id, "completed")

        assert len(orchestrator.list_for_user(test_user.id)) == 2
        assert len(orchestrator.list_all()) == 2
        stats = orchestrator.stats()
        assert stats["total_payments"] == 2
        assert stats["total_completed_amount"] == pytest.approx(1500.0)

    def test_invoice_lookup_uses_total(self, orchestrator, db, make_invoice):
        invoice = make_invoice(total="99.99")
        payment = orchestrator.initiate(invoice.id, "cash_on_delivery").payment
        assert Decimal(str(payment.amount)) == Decimal(str(db.get(Invoice, invoice.id).total))
