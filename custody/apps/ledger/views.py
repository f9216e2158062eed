import json
import logging
from decimal import Decimal

from django.conf import settings
from django.core.serializers.json import DjangoJSONEncoder
from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_POST

from .errors import CustodyError, InvalidRequest, UnsupportedChain
from .payloads import DepositCreditRequest, RedemptionRequest
from .services.balances import deposit_to_dict, find_deposit, get_balance, reserve_status
from .services.crediting import default_credit_service
from .services.settlement import default_settlement_service
from .stores import DjangoLedgerStore

logger = logging.getLogger(__name__)


def _json(body: dict, status: int = 200) -> JsonResponse:
    return JsonResponse(body, status=status, encoder=DjangoJSONEncoder)


def _error(exc: CustodyError) -> JsonResponse:
    return _json(exc.to_dict(), status=exc.status_code)


def _read_body(request) -> dict:
    try:
        # Decimal keeps amounts like 0.1 exact
        return json.loads(request.body or b"{}", parse_float=Decimal)
    except (ValueError, UnicodeDecodeError):
        raise InvalidRequest("Request body must be valid JSON")


@csrf_exempt
@require_POST
def redeem_view(request):
    service = default_settlement_service()
    try:
        payload = RedemptionRequest.from_payload(_read_body(request), service.supported_chains)
        result = service.settle(payload)
    except CustodyError as e:
        return _error(e)
    return _json(result.to_dict())


@csrf_exempt
@require_POST
def credit_deposit_view(request):
    service = default_credit_service()
    try:
        payload = DepositCreditRequest.from_payload(_read_body(request), service.supported_chains)
        result = service.apply(payload)
    except CustodyError as e:
        return _error(e)
    return _json(result.to_dict(), status=201)


def _query_chain(request, required=True):
    raw_chain = request.GET.get("chainId")
    if raw_chain is None and not required:
        return None
    try:
        return int(raw_chain)
    except (TypeError, ValueError):
        raise UnsupportedChain(
            "chainId query parameter must be an integer",
            {"chainId": raw_chain, "supportedChains": sorted(settings.SUPPORTED_CHAINS)},
        )


@require_GET
def balance_view(request, address):
    try:
        summary = get_balance(DjangoLedgerStore(), address, _query_chain(request))
    except CustodyError as e:
        return _error(e)
    return _json(summary.to_dict())


@require_GET
def deposit_by_tx_view(request, tx_hash):
    try:
        deposit = find_deposit(DjangoLedgerStore(), tx_hash, _query_chain(request, required=False))
    except CustodyError as e:
        return _error(e)
    return _json({"success": True, "deposit": deposit_to_dict(deposit)})


@require_GET
def reserve_status_view(request):
    return _json(reserve_status(DjangoLedgerStore()))
