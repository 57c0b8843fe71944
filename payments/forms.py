from django import forms


class CustomerDetailsForm(forms.Form):
    email = forms.EmailField(max_length=254)
    first_name = forms.CharField(max_length=150, required=False)
    last_name = forms.CharField(max_length=150, required=False)

    @classmethod
    def from_payload(cls, details):
        """Accepts the checkout page's camelCase keys as well as snake_case."""
        details = details or {}
        return cls(data={
            'email': details.get('email', ''),
            'first_name': details.get('firstName', details.get('first_name', '')),
            'last_name': details.get('lastName', details.get('last_name', '')),
        })

    def clean_email(self):
        return self.cleaned_data['email'].strip().lower()


class CouponCheckForm(forms.Form):
    code = forms.CharField(max_length=50)
    amount = forms.DecimalField(max_digits=10, decimal_places=2, min_value=0, required=False)
    currency = forms.CharField(max_length=3, required=False)
    product_id = forms.IntegerField(required=False)
    region = forms.CharField(max_length=8, required=False)

    def clean(self):
        cleaned_data = super().clean()
        if cleaned_data.get('amount') is None and not cleaned_data.get('product_id'):
            raise forms.ValidationError("Provide either an amount or a product.")
        return cleaned_data
