import stripe
from django.conf import settings
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_POST
from django.http import JsonResponse, HttpResponse
import logging
import json

from products.models import Product
from products.pricing import apply_discount, get_coupon, region_for_country, resolve_price
from .exceptions import CheckoutError, InvalidCouponError
from .forms import CouponCheckForm, CustomerDetailsForm
from .gateway import PaymentIntentGateway
from .notifications import notify_purchase
from .services import (
    complete_checkout,
    handle_payment_intent_succeeded,
    mark_checkout_failed,
    start_checkout,
)

logger = logging.getLogger(__name__)


def _json_body(request):
    try:
        data = json.loads(request.body or b'{}')
    except (ValueError, UnicodeDecodeError):
        return None
    return data if isinstance(data, dict) else None


def _bad_request(message, errors=None):
    payload = {'error': 'bad_request', 'message': message}
    if errors:
        payload['errors'] = {field: list(messages) for field, messages in errors.items()}
    return JsonResponse(payload, status=400)


def _error_response(error):
    return JsonResponse(error.as_dict(), status=error.status_code)


def _request_region(request):
    """?region=, ?currency= or ?country=, else the CDN's CF-IPCountry header."""
    for param in ('region', 'currency'):
        value = request.GET.get(param)
        if value:
            return value
    country = request.GET.get('country') or request.META.get('HTTP_CF_IPCOUNTRY')
    return region_for_country(country)


@require_GET
def product_price(request, product_id):
    try:
        quote = resolve_price(product_id, _request_region(request))
    except CheckoutError as e:
        return JsonResponse({'error': 'not_found', 'message': e.message}, status=404)

    product = Product.objects.get(pk=product_id)
    return JsonResponse({
        'id': product.id,
        'name': product.name,
        'description': product.description,
        'entitlementType': product.entitlement_type,
        'price': str(quote.final_amount),
        'currency': quote.currency,
        'region': quote.region,
    })


@csrf_exempt
@require_POST
def validate_coupon(request):
    data = _json_body(request)
    if data is None:
        return _bad_request("Invalid JSON body.")

    form = CouponCheckForm(data={
        'code': data.get('code') or data.get('couponCode', ''),
        'amount': data.get('amount'),
        'currency': data.get('currency', ''),
        'product_id': data.get('productId'),
        'region': data.get('region', ''),
    })
    if not form.is_valid():
        return _bad_request("Invalid coupon request.", form.errors)

    cd = form.cleaned_data
    try:
        if cd['product_id']:
            quote = resolve_price(cd['product_id'], cd['region'] or None, cd['code'])
        else:
            quote = apply_discount(get_coupon(cd['code']), cd['amount'], cd['currency'] or settings.DEFAULT_CURRENCY)
    except InvalidCouponError as e:
        payload = {'valid': False, 'message': e.message}
        if e.quote is not None:
            payload.update(e.quote.as_dict())
        return JsonResponse(payload)
    except CheckoutError as e:
        return _error_response(e)

    coupon = get_coupon(quote.coupon_code)
    return JsonResponse({
        'valid': True,
        'coupon': {'code': coupon.code, 'description': coupon.description},
        **quote.as_dict(),
    })


@csrf_exempt
@require_POST
def create_payment_intent(request):
    data = _json_body(request)
    if data is None:
        return _bad_request("Invalid JSON body.")

    form = CustomerDetailsForm.from_payload(data.get('customerDetails'))
    if not form.is_valid():
        return _bad_request("Customer details are incomplete.", form.errors)

    product_id = data.get('productId')
    if not product_id:
        return _bad_request("productId is required.")
    region = data.get('region') or region_for_country(request.META.get('HTTP_CF_IPCOUNTRY'))

    try:
        product = Product.objects.get(pk=product_id, is_active=True)
    except (Product.DoesNotExist, ValueError):
        return JsonResponse({'error': 'not_found', 'message': "Product not found."}, status=404)

    try:
        checkout, handle, quote = start_checkout(
            product, form.cleaned_data,
            coupon_code=data.get('couponCode') or None,
            region=region,
        )
    except CheckoutError as e:
        return _error_response(e)

    payload = {
        'checkoutToken': str(checkout.token),
        'originalAmount': str(quote.original_amount),
        'discountAmount': str(quote.discount_amount),
        'finalAmount': str(quote.final_amount),
        'currency': quote.currency,
        'couponCode': quote.coupon_code,
    }
    if handle.is_free:
        payload.update({'free': True, 'freeConfirmation': handle.free_confirmation})
    else:
        payload.update({'clientSecret': handle.client_secret, 'paymentIntentId': handle.payment_intent_id})
    return JsonResponse(payload)


@csrf_exempt
@require_POST
def complete_purchase(request):
    data = _json_body(request)
    if data is None:
        return _bad_request("Invalid JSON body.")

    payment_intent_id = data.get('paymentIntentId')
    free_confirmation = data.get('freeConfirmation')
    if not payment_intent_id and not free_confirmation:
        return _bad_request("paymentIntentId or freeConfirmation is required.")

    customer_details = {}
    if data.get('customerDetails'):
        form = CustomerDetailsForm.from_payload(data['customerDetails'])
        if form.is_valid():
            customer_details = form.cleaned_data

    try:
        outcome = complete_checkout(
            payment_intent_id=payment_intent_id,
            free_confirmation=free_confirmation,
            checkout_token=data.get('checkoutToken'),
            customer_details=customer_details,
        )
    except CheckoutError as e:
        return _error_response(e)

    notify_purchase(outcome)
    return JsonResponse(outcome.as_dict())


@csrf_exempt
@require_POST
def stripe_webhook(request):
    payload = request.body
    sig_header = request.META.get('HTTP_STRIPE_SIGNATURE')

    try:
        event = stripe.Webhook.construct_event(
            payload, sig_header, settings.STRIPE_WEBHOOK_SECRET
        )
    except ValueError:
        return HttpResponse("Invalid payload", status=400)
    except stripe.SignatureVerificationError:
        return HttpResponse("Invalid signature", status=400)

    intent = event['data']['object']

    if event['type'] == 'payment_intent.succeeded':
        try:
            outcome = handle_payment_intent_succeeded(intent, gateway=PaymentIntentGateway())
        except CheckoutError as e:
            logger.error(f"Webhook finalization failed for {intent.id}: {e.message}")
            # 5xx makes Stripe redeliver; amount mismatches will not fix themselves.
            status = 500 if e.status_code >= 500 else 200
            return HttpResponse("Webhook processing error", status=status)
        if outcome is not None:
            notify_purchase(outcome)

    elif event['type'] == 'payment_intent.payment_failed':
        error = getattr(intent, 'last_payment_error', None)
        reason = getattr(error, 'message', None) or 'payment failed'
        mark_checkout_failed(intent.id, reason)

    return HttpResponse(status=200)
