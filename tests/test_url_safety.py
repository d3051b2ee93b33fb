import pytest
from kb_indexer.exceptions import UnsafeUrlError
from kb_indexer.utils.url_safety import validate_public_url

@pytest.mark.parametrize("url", [
    "https://example.com/pricing",
    "http://docs.example.org:8080/guide",
    "https://93.184.216.34/",
])
def test_public_urls_are_accepted(url):
    validate_public_url(url)

@pytest.mark.parametrize("url", [
    "ftp://example.com/file.txt",
    "javascript:alert(1)",
    "https:///no-host",
    "http://localhost/",
    "http://api.localhost/",
    "http://127.0.0.1:5000/",
    "http://10.1.2.3/",
    "http://172.16.0.10/",
    "http://192.168.1.1/router",
    "http://169.254.169.254/latest/meta-data/",
    "http://metadata.google.internal/computeMetadata/v1/",
    "http://0.0.0.0/",
    "http://[::1]/",
    "http://[::ffff:127.0.0.1]/",
    "http://[fe80::1]/",
])
def test_non_public_urls_are_rejected(url):
    with pytest.raises(UnsafeUrlError):
        validate_public_url(url)
