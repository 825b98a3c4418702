"""
Proof archive - durable, content-addressed storage for proof documents.
Documents are stored in S3 under a content id derived from their canonical JSON.
"""
import hashlib
import json
import re
from typing import Any, Dict

import boto3
from botocore.exceptions import ClientError

from .config import config
from .logging import logger
from .utils import DecimalEncoder

# CIDv0 style ids ('Qm' + 44 chars) and CIDv1 base32 ids ('bafy...'/'bafk...')
CID_V0_PATTERN = re.compile(r'^Qm[0-9A-Za-z]{44}$')
CID_V1_PATTERN = re.compile(r'^baf[yk][a-z2-7]{50,}$')


def is_valid_content_id(value: str) -> bool:
    """Check a content id against the two supported addressing schemes."""
    if not value or not isinstance(value, str):
        return False
    return bool(CID_V0_PATTERN.match(value) or CID_V1_PATTERN.match(value))


def canonical_json(document: Dict[str, Any]) -> str:
    return json.dumps(document, sort_keys=True, separators=(',', ':'), cls=DecimalEncoder)


def compute_content_id(document: Dict[str, Any]) -> str:
    digest = hashlib.sha256(canonical_json(document).encode('utf-8')).hexdigest()
    return 'Qm' + digest[:44]


class ProofArchiver:
    """Uploads immutable proof documents and returns their content id."""

    def __init__(self, bucket_name: str = None, s3_client=None, gateway_url: str = None):
        self.bucket_name = bucket_name or config.PROOF_BUCKET
        self.s3 = s3_client or boto3.client('s3', region_name=config.AWS_REGION)
        self.gateway = gateway_url or config.IPFS_GATEWAY_URL

    @staticmethod
    def object_key(content_id: str) -> str:
        return f"proofs/{content_id}.json"

    def upload(self, document: Dict[str, Any]) -> str:
        """
        Store a proof document.

        Returns:
            Content id of the stored document

        Raises:
            ValueError if the computed id fails the content-id pattern check
        """
        body = canonical_json(document)
        content_id = compute_content_id(document)
        if not is_valid_content_id(content_id):
            raise ValueError(f"Invalid content id generated: {content_id}")

        try:
            self.s3.put_object(
                Bucket=self.bucket_name,
                Key=self.object_key(content_id),
                Body=body.encode('utf-8'),
                ContentType='application/json',
                Metadata={'content-id': content_id}
            )
        except ClientError as e:
            logger.error(f"Error archiving proof {content_id}: {e}")
            raise

        logger.info(f"Proof archived: {content_id}")
        return content_id

    def fetch(self, content_id: str) -> Dict[str, Any]:
        if not is_valid_content_id(content_id):
            raise ValueError(f"Invalid content id: {content_id}")
        response = self.s3.get_object(Bucket=self.bucket_name, Key=self.object_key(content_id))
        return json.loads(response['Body'].read())

    def gateway_url(self, content_id: str) -> str:
        return f"{self.gateway}{content_id}"
