"""
Incident Service — イベントソーシングによるインシデント管理

書き込み側 (Command) はイベントストアへの追記のみ、
読み取り側 (Query) はイベントから投影したリードモデルを使う。
"""
