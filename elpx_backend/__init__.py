"""Backend for storing, unpacking and serving eXeLearning (.elpx) packages.

This package intentionally keeps FastAPI route handlers thin:
- archive validation + Zip Slip-safe extraction
- artifact bookkeeping against host media records
- hardened serving of extracted files

Security note:
Artifact ids are random 40-hex tokens, not content digests. The content
gateway trusts any well-formed id and only checks the filesystem, so never
log or expose filesystem paths in responses.
"""
