"""
Tests for the proof archive.
"""
import json
from unittest.mock import MagicMock

import pytest

from shared.archiver import ProofArchiver, compute_content_id, is_valid_content_id


class TestContentIdValidation:

    def test_cid_v0(self):
        assert is_valid_content_id('QmYwAPJzv5CZsnA625s3Xf2nemtYgPpHdWEz79ojWnPbdG')

    def test_cid_v1(self):
        assert is_valid_content_id('bafybeigdyrzt5sfp7udm7hu76uh7y26nf3efuylqabf3oclgtqy55fbzdi')

    @pytest.mark.parametrize('value', [
        None,
        '',
        'Qm123',
        'QmYwAPJzv5CZsnA625s3Xf2nemtYgPpHdWEz79ojWnPbdG-extra',
        'bafyshort',
        'https://ipfs.io/ipfs/QmYwAPJzv5CZsnA625s3Xf2nemtYgPpHdWEz79ojWnPbdG',
    ])
    def test_invalid(self, value):
        assert not is_valid_content_id(value)


class TestProofArchiver:

    def test_content_id_is_deterministic_and_key_order_independent(self):
        first = compute_content_id({'missionId': 'm1', 'confidence': 90})
        second = compute_content_id({'confidence': 90, 'missionId': 'm1'})
        assert first == second
        assert is_valid_content_id(first)

    def test_upload_stores_document(self):
        s3 = MagicMock()
        archiver = ProofArchiver(bucket_name='proofs-bucket', s3_client=s3, gateway_url='https://gw/ipfs/')
        document = {'missionId': 'm1', 'runnerId': 'r1', 'confidence': 80.0}

        content_id = archiver.upload(document)

        kwargs = s3.put_object.call_args.kwargs
        assert kwargs['Bucket'] == 'proofs-bucket'
        assert kwargs['Key'] == f'proofs/{content_id}.json'
        assert json.loads(kwargs['Body']) == document
        assert archiver.gateway_url(content_id) == f'https://gw/ipfs/{content_id}'

    def test_fetch_rejects_invalid_id(self):
        archiver = ProofArchiver(bucket_name='b', s3_client=MagicMock())
        with pytest.raises(ValueError):
            archiver.fetch('not-a-cid')
