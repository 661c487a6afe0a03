import requests

from validation import digits_only, format_cep

DEFAULT_LOOKUP_URL = "https://viacep.com.br/ws/{cep}/json/"


class PostalLookupError(ValueError):
    pass


def lookup_cep(cep, url_template: str = DEFAULT_LOOKUP_URL, timeout: float = 5.0):
    digits = digits_only(cep)
    if len(digits) != 8:
        raise PostalLookupError("CEP must have 8 digits.")
    try:
        r = requests.get(url_template.format(cep=digits), timeout=timeout)
    except requests.RequestException as exc:
        raise PostalLookupError("Could not reach the address service. Try again.") from exc
    if r.status_code != 200:
        raise PostalLookupError(f"Address service answered {r.status_code}.")
    data = r.json()
    if data.get("erro"):
        raise PostalLookupError("CEP not found. Check the number you typed.")
    return {
        "cep": format_cep(digits),
        "street": data.get("logradouro") or "",
        "neighborhood": data.get("bairro") or "",
        "city": data.get("localidade") or "",
        "state": (data.get("uf") or "").upper(),
    }
