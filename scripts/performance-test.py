#!/usr/bin/env python3
import sys
import os
import time

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from dateutil import tz

from duplicate_detector import DuplicateDetector
from entity_resolver import EntityResolver
from models import ExtractRow, TransactionKeyKind
from reference_catalog import ReferenceCatalog, StationRef, TankRef, TerminalRef
from row_mapper import RowMapper

catalog = ReferenceCatalog(
    stations={'ST01': StationRef(id=10, code='ST01', mandator_id=1, mandator_number='M1')},
    terminals={10: [TerminalRef(id=5, station_id=10, code='A', number='1')]},
    tanks={(10, 42): TankRef(id=7, number=2)},
)

# Generate test data: 10,000 rows, every tenth one a repeat of the row before it
rows = []
for i in range(10000):
    number = i - 1 if i % 10 == 9 else i
    rows.append(ExtractRow.model_validate({
        'row_number': i + 1,
        'Transaction_StartDateTime': f'2025-01-01T{(number // 3600) % 24:02d}:{(number // 60) % 60:02d}:{number % 60:02d}',
        'Transaction_Number': str(100000 + number),
        'Station_Code': 'ST01',
        'Terminal_Code': 'A',
        'TransactionLineItem_Article_Number': '42',
        'TransactionLineItem_Quantity_Value': '40.00',
        'TransactionLineItem_GrossSellAmount_Amount': '60.00',
        'TransactionLineItem_DispenserNumber': '3',
        'Payment_Card': 'true',
    }))


class NoStore:
    def load_transaction_keys(self, key_kind):
        return {}


# Performance test
start_time = time.time()
resolver = EntityResolver(catalog)
mapper = RowMapper(local_tz=tz.UTC)
detector = DuplicateDetector(NoStore(), TransactionKeyKind.DEVICE)
detector.load()
duplicates = 0
for row in rows:
    keys = resolver.resolve(row)
    txn = mapper.map_transaction(row, keys)
    key = txn.identity_key(TransactionKeyKind.DEVICE)
    if key in detector:
        duplicates += 1
        continue
    detector.register(key, len(detector) + 1)
    mapper.map_payment(row, keys, transaction_id=len(detector))
duration = time.time() - start_time

print(f'Mapped 10,000 extract rows in {duration:.2f} seconds')
assert duration < 30, f'Performance test failed: {duration:.2f}s > 30s'
assert duplicates == 1000, f'Expected 1000 duplicates, got {duplicates}'
print('Performance test passed')
