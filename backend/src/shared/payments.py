"""
Hybrid payment router.

Crypto methods (MATIC, USDC) are escrowed on-chain before a mission is
verified, so the router only records the settled transaction. Fiat methods
(Cash App, Zelle, Venmo, PayPal) have no API integration: the router creates a
payment instruction, asks the curator to pay out-of-band, and waits for a
confirmation via mark_payment_completed.

Instructions are persisted through an instruction store (DynamoDB in
production) because the confirmation usually arrives in a different process
from the one that created the instruction.
"""
import secrets
from datetime import timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Dict, List, Optional

from .config import config
from .errors import PaymentInstructionNotFoundError, UnsupportedPaymentMethodError
from .logging import logger
from .models import NotificationType, PaymentMethod, PaymentStatus
from .notifier import curator_audience, runner_audience
from .stores import PaymentInstructionStore
from .utils import to_iso, utc_now

CENTS = Decimal('0.01')

# Estimated gas per on-chain transfer
GAS_FEES = {
    PaymentMethod.MATIC: Decimal('0.01'),
    PaymentMethod.USDC: Decimal('0.02'),
}

PAYPAL_FEE_PERCENT = Decimal('0.029')
PAYPAL_FEE_FIXED = Decimal('0.30')

PAYMENT_METHOD_DETAILS = {
    PaymentMethod.MATIC: {
        'name': 'MATIC (Polygon)',
        'description': 'Direct peer-to-peer crypto payment',
        'fees': '~$0.01 gas fee',
        'processingTime': 'Instant',
        'supported': True,
    },
    PaymentMethod.USDC: {
        'name': 'USDC Stablecoin',
        'description': 'USD-pegged stable cryptocurrency',
        'fees': '~$0.02 gas fee',
        'processingTime': 'Instant',
        'supported': True,
    },
    PaymentMethod.CASHAPP: {
        'name': 'Cash App',
        'description': 'Instant mobile payment',
        'fees': 'Free',
        'processingTime': 'Instant',
        'supported': True,
    },
    PaymentMethod.ZELLE: {
        'name': 'Zelle',
        'description': 'Bank-to-bank transfer',
        'fees': 'Free',
        'processingTime': 'Instant',
        'supported': True,
    },
    PaymentMethod.VENMO: {
        'name': 'Venmo',
        'description': 'Social payment app',
        'fees': 'Free for bank transfers',
        'processingTime': 'Instant',
        'supported': True,
    },
    PaymentMethod.PAYPAL: {
        'name': 'PayPal',
        'description': 'Global digital payments',
        'fees': '2.9% + $0.30 (Friends & Family free)',
        'processingTime': 'Instant',
        'supported': True,
    },
}


def to_money(amount: Any) -> Decimal:
    return Decimal(str(amount))


def generate_transaction_id() -> str:
    return secrets.token_hex(16)


def calculate_fees(method: str, amount: Any) -> Decimal:
    """
    Fee charged for moving `amount` through `method`.

    Gas is a flat estimate regardless of amount; PayPal charges 2.9% + $0.30
    rounded to the cent; peer transfer apps are free.
    """
    if method in GAS_FEES:
        return GAS_FEES[method]
    if method == PaymentMethod.PAYPAL:
        fee = to_money(amount) * PAYPAL_FEE_PERCENT + PAYPAL_FEE_FIXED
        return fee.quantize(CENTS, rounding=ROUND_HALF_UP)
    return Decimal('0')


def get_payment_instructions(method: str, payload: Dict[str, Any]) -> Dict[str, List[str]]:
    """Human-readable, channel-specific steps the curator follows to pay."""
    amount = payload.get('amount')
    recipient = payload.get('recipient')

    if method == PaymentMethod.CASHAPP:
        return {
            'steps': [
                "Open Cash App on your phone",
                "Tap the '$' button",
                f"Enter amount: ${amount}",
                "Tap 'Pay'",
                f"Enter recipient: {recipient}",
                f"Add note: {payload.get('note')}",
                "Tap 'Pay' to send",
            ],
            'tips': [
                "Make sure you have sufficient balance",
                "Double-check the recipient handle",
                "Keep the payment receipt",
            ],
        }
    if method == PaymentMethod.ZELLE:
        return {
            'steps': [
                "Open your banking app",
                "Find 'Zelle' or 'Send Money'",
                f"Add recipient: {recipient}",
                f"Enter amount: ${amount}",
                f"Add memo: {payload.get('memo')}",
                "Review and send",
            ],
            'tips': [
                "Use the exact email/phone provided",
                "Zelle transfers are usually instant",
                "Save the confirmation number",
            ],
        }
    if method == PaymentMethod.VENMO:
        return {
            'steps': [
                "Open Venmo app",
                "Tap the 'Pay' button",
                f"Search for: {recipient}",
                f"Enter amount: ${amount}",
                f"Add note: {payload.get('note')}",
                "Set privacy to 'Private'",
                "Tap 'Pay'",
            ],
            'tips': [
                "Make sure you're friends with the recipient",
                "Venmo payments are instant",
                "Keep the transaction ID",
            ],
        }
    if method == PaymentMethod.PAYPAL:
        return {
            'steps': [
                "Go to PayPal.com or open the app",
                "Click 'Send & Request'",
                f"Enter recipient email: {recipient}",
                f"Enter amount: ${amount}",
                f"Add note: {payload.get('note')}",
                "Select 'Friends and Family'",
                "Review and send",
            ],
            'tips': [
                "Use 'Friends and Family' to avoid fees",
                "PayPal payments are usually instant",
                "Save the transaction ID",
            ],
        }
    return {'steps': [], 'tips': []}


def build_manual_payload(
    method: str,
    amount: Decimal,
    recipient_info: Dict[str, Any],
    mission_id: str,
    curator_id: str
) -> Dict[str, Any]:
    """Channel-specific instruction payload for a fiat payment."""
    payload = {'amount': amount, 'missionId': mission_id, 'curatorId': curator_id}

    if method == PaymentMethod.CASHAPP:
        payload.update({
            'recipient': recipient_info.get('cashAppHandle') or recipient_info.get('email'),
            'note': f"Club Run Mission Payment - {mission_id}",
            'source': 'curator_account',
        })
    elif method == PaymentMethod.ZELLE:
        payload.update({
            'recipient': recipient_info.get('email') or recipient_info.get('phone'),
            'memo': f"Club Run Mission - {mission_id}",
            'type': 'zelle_transfer',
        })
    elif method == PaymentMethod.VENMO:
        payload.update({
            'recipient': recipient_info.get('venmoHandle'),
            'note': 'Club Run Mission Payment',
            'audience': 'private',
        })
    elif method == PaymentMethod.PAYPAL:
        payload.update({
            'recipient': recipient_info.get('paypalEmail'),
            'note': f"Club Run Mission Payment - {mission_id}",
            'currency': 'USD',
        })

    if recipient_info.get('runnerId'):
        payload['runnerId'] = recipient_info['runnerId']
    return payload


class PaymentRouter:
    """
    Dispatches mission payouts to the right settlement path and tracks
    pending fiat instructions until the curator confirms them.
    """

    def __init__(
        self,
        notifier,
        instructions=None,
        clock: Callable = utc_now,
        instruction_ttl_hours: int = None
    ):
        self.notifier = notifier
        self.instructions = instructions if instructions is not None else PaymentInstructionStore()
        self.clock = clock
        self.instruction_ttl = timedelta(
            hours=instruction_ttl_hours or config.PAYMENT_INSTRUCTION_TTL_HOURS
        )

    @staticmethod
    def validate_payment_method(method: str) -> bool:
        return method in PaymentMethod.ALL

    @staticmethod
    def get_payment_method_details(method: str) -> Optional[Dict[str, Any]]:
        return PAYMENT_METHOD_DETAILS.get(method)

    calculate_fees = staticmethod(calculate_fees)
    get_payment_instructions = staticmethod(get_payment_instructions)

    def process_payment(
        self,
        method: str,
        amount: Any,
        recipient_info: Dict[str, Any],
        mission_id: str,
        curator_id: str
    ) -> Dict[str, Any]:
        """
        Route a payment.

        Returns:
            PaymentResult dict. Crypto payments come back 'completed'; fiat
            payments come back 'pending' with the rendered instruction.

        Raises:
            UnsupportedPaymentMethodError for unknown methods
        """
        if not self.validate_payment_method(method):
            raise UnsupportedPaymentMethodError(method)

        amount = to_money(amount)
        recipient_info = recipient_info or {}

        if method in PaymentMethod.CRYPTO:
            return self._process_crypto_payment(method, amount, recipient_info, mission_id)
        return self._process_manual_payment(method, amount, recipient_info, mission_id, curator_id)

    def process_mission_payment(self, mission: Dict[str, Any], runner: Dict[str, Any]) -> Dict[str, Any]:
        """Pay the runner of a verified mission from the mission's budget."""
        recipient_info = dict(runner.get('paymentInfo') or {})
        recipient_info['runnerId'] = runner.get('id')
        return self.process_payment(
            mission.get('paymentMethod'),
            mission.get('budget', 0),
            recipient_info,
            mission.get('missionId') or mission.get('id'),
            mission.get('curatorId')
        )

    def _process_crypto_payment(self, method, amount, recipient_info, mission_id):
        # Funds are already held in escrow by the mission contract
        transaction_id = recipient_info.get('blockchainTxHash') or generate_transaction_id()
        logger.info(f"Recorded {method} payment {transaction_id} for mission {mission_id}")
        return {
            'success': True,
            'transactionId': transaction_id,
            'paymentMethod': method,
            'amount': amount,
            'fees': calculate_fees(method, amount),
            'status': PaymentStatus.COMPLETED,
            'timestamp': to_iso(self.clock()),
        }

    def _process_manual_payment(self, method, amount, recipient_info, mission_id, curator_id):
        payload = build_manual_payload(method, amount, recipient_info, mission_id, curator_id)
        instruction = self._create_payment_instruction(method, payload)

        return {
            'success': True,
            'transactionId': instruction['id'],
            'paymentMethod': method,
            'amount': amount,
            'fees': calculate_fees(method, amount),
            'status': PaymentStatus.PENDING,
            'instruction': get_payment_instructions(method, payload),
            'timestamp': to_iso(instruction['created_at']),
        }

    def _create_payment_instruction(self, method: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        created_at = self.clock()
        instruction = {
            'id': generate_transaction_id(),
            'payment_method': method,
            'payload': payload,
            'status': PaymentStatus.PENDING,
            'created_at': created_at,
            'expires_at': created_at + self.instruction_ttl,
        }
        instruction['notification'] = self._curator_notification(instruction)
        self.instructions.save(instruction)
        logger.info(f"Created {method} payment instruction {instruction['id']} for mission {payload.get('missionId')}")

        self.notifier.notify(curator_audience(payload.get('curatorId')), instruction['notification'])
        return instruction

    @staticmethod
    def _curator_notification(instruction: Dict[str, Any]) -> Dict[str, Any]:
        payload = instruction['payload']
        return {
            'type': NotificationType.PAYMENT_REQUIRED,
            'method': instruction['payment_method'],
            'amount': payload['amount'],
            'recipient': payload.get('recipient'),
            'instructions': get_payment_instructions(instruction['payment_method'], payload),
            'instructionId': instruction['id'],
            'missionId': payload.get('missionId'),
            'expiresAt': to_iso(instruction['expires_at']),
        }

    def get_curator_notifications(self, curator_id: str) -> List[Dict[str, Any]]:
        """Payment requests sent to a curator, oldest first."""
        return [
            instruction['notification']
            for instruction in self.instructions.for_curator(curator_id)
            if instruction.get('notification')
        ]

    def get_payment_instruction(self, instruction_id: str) -> Optional[Dict[str, Any]]:
        return self.instructions.get(instruction_id)

    def mark_payment_completed(self, instruction_id: str, transaction_details: Dict[str, Any]) -> Dict[str, Any]:
        """
        Settle a pending fiat instruction and tell the runner they were paid.

        Raises:
            PaymentInstructionNotFoundError when the id is unknown
        """
        instruction = self.instructions.get(instruction_id)
        if instruction is None:
            raise PaymentInstructionNotFoundError(instruction_id)

        if instruction['status'] == PaymentStatus.COMPLETED:
            logger.warning(f"Payment instruction {instruction_id} already completed")
            return instruction

        completed_at = self.clock()
        if not self.instructions.mark_completed(instruction_id, completed_at, transaction_details):
            logger.warning(f"Payment instruction {instruction_id} was completed concurrently")
            return self.instructions.get(instruction_id)

        instruction['status'] = PaymentStatus.COMPLETED
        instruction['completed_at'] = completed_at
        instruction['transaction_details'] = transaction_details
        logger.info(f"Payment instruction {instruction_id} marked completed")

        payload = instruction['payload']
        audience = runner_audience(payload['runnerId']) if payload.get('runnerId') else f"mission:{payload.get('missionId')}"
        self.notifier.notify(audience, {
            'type': NotificationType.PAYMENT_COMPLETED,
            'missionId': payload.get('missionId'),
            'amount': transaction_details.get('amount', payload.get('amount')),
            'method': transaction_details.get('method', instruction['payment_method']),
            'transactionId': transaction_details.get('transactionId'),
            'timestamp': to_iso(instruction['completed_at']),
        })
        return instruction

    def get_payment_status(self, instruction_id: str) -> str:
        instruction = self.instructions.get(instruction_id)
        return instruction['status'] if instruction else PaymentStatus.NOT_FOUND
